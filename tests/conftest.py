import hashlib
import json

import httpx
import pytest

from retention.config import RegistryClientConfig

REGISTRY_URL = "https://registry.example.com"


class FakeRegistry:
    """In-memory Docker Registry v2 served through httpx.MockTransport."""

    def __init__(self, repositories: dict[str, list[str]]) -> None:
        self.manifests: dict[str, dict[str, str]] = {
            repository: {tag: self.digest_of(repository, tag) for tag in tags}
            for repository, tags in repositories.items()
        }
        self.requests: list[httpx.Request] = []
        self.unreachable: set[str] = set()
        self.missing_manifests: set[tuple[str, str]] = set()
        self.undeletable: set[str] = set()
        self.failing_manifests: set[tuple[str, str]] = set()
        self.failing_deletes: set[str] = set()

    @staticmethod
    def digest_of(*parts: str) -> str:
        return "sha256:" + hashlib.sha256("/".join(parts).encode()).hexdigest()

    def config_digest(self, repository: str, tag: str) -> str:
        return self.digest_of(repository, tag)

    def manifest_digest(self, repository: str, tag: str) -> str:
        return self.digest_of(repository, tag, "manifest")

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/v2/")

        if path.endswith("/tags/list"):
            repository = path.removesuffix("/tags/list")
            if repository in self.unreachable:
                raise httpx.ConnectError("connection refused", request=request)
            if repository not in self.manifests:
                return httpx.Response(404, json={"errors": [{"code": "NAME_UNKNOWN"}]})
            tags = list(self.manifests[repository]) or None
            return httpx.Response(200, json={"name": repository, "tags": tags})

        repository, _, reference = path.rpartition("/manifests/")
        manifests = self.manifests.get(repository, {})

        if request.method == "GET":
            if (repository, reference) in self.failing_manifests:
                raise httpx.ConnectError("connection reset", request=request)
            if reference not in manifests or (repository, reference) in self.missing_manifests:
                return httpx.Response(404, json={"errors": [{"code": "MANIFEST_UNKNOWN"}]})
            body = {
                "schemaVersion": 2,
                "config": {
                    "mediaType": "application/vnd.docker.container.image.v1+json",
                    "size": 1024,
                    "digest": manifests[reference],
                },
            }
            return httpx.Response(
                200,
                content=json.dumps(body).encode(),
                headers={
                    "Content-Type": request.headers["Accept"],
                    "Docker-Content-Digest": self.manifest_digest(repository, reference),
                },
            )

        if request.method == "DELETE":
            if reference in self.failing_deletes:
                raise httpx.ConnectError("connection reset", request=request)
            if repository in self.undeletable:
                return httpx.Response(405, json={"errors": [{"code": "UNSUPPORTED"}]})
            matching = [
                tag
                for tag, digest in manifests.items()
                if reference in (digest, self.manifest_digest(repository, tag))
            ]
            if not matching:
                return httpx.Response(404)
            for tag in matching:
                del manifests[tag]
            return httpx.Response(202)

        return httpx.Response(405)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)

    def deletes(self) -> list[str]:
        return [r.url.path for r in self.requests if r.method == "DELETE"]


@pytest.fixture
def registry_config() -> RegistryClientConfig:
    return RegistryClientConfig(base_url=REGISTRY_URL, timeout=5)


@pytest.fixture
def fake_registry() -> FakeRegistry:
    return FakeRegistry(
        {
            "app": ["1", "2", "3", "4", "5"],
            "team/api": ["10", "9", "latest", "11"],
            "small": ["1", "2"],
        }
    )


@pytest.fixture
def make_registry():
    return FakeRegistry
