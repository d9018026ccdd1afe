import logging

import httpx

from retention.config import RegistryClientConfig
from retention.models import DigestSource
from retention.utils import MANIFEST_V2, build_headers


class RegistryClient:
    """Docker Registry v2 calls used by the cleanup.

    Every method returns its result together with a list of errors; transport
    and protocol failures are logged and reported, never raised.
    """

    def __init__(
        self,
        config: RegistryClientConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        max_connections = config.max_concurrent_repositories * 2
        if config.insecure_transport:
            logging.warning("Using insecure HTTP-client")
        self._session = httpx.AsyncClient(
            headers=build_headers(config),
            timeout=config.timeout,
            verify=not config.insecure_transport,
            follow_redirects=True,
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=config.max_concurrent_repositories,
            ),
            proxy=config.proxy,
            trust_env=False,
            transport=transport,
        )

    async def __aenter__(self) -> "RegistryClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._session.aclose()

    def url(self, repository: str, *parts: str) -> str:
        return "/".join([self.config.base_url, repository.strip("/"), *parts])

    async def list_tags(self, repository: str) -> tuple[list[str], list[str]]:
        try:
            response = await self._session.get(self.url(repository, "tags", "list"))
            response.raise_for_status()
            data = response.json()
            if not isinstance(data, dict):
                raise ValueError(f"unexpected tag list {data!r}")
            tags = [str(tag) for tag in data.get("tags") or []]
            if not tags:
                logging.warning(f"No tags found for {repository}")
            return tags, []
        except httpx.HTTPStatusError as err:
            error = (
                f"Error getting tags for {repository}. "
                f"code: {err.response.status_code}, text: {err.response.text}"
            )
        except (httpx.HTTPError, ValueError) as err:
            error = f"Error getting tags for {repository}. Error: {err!r}"
        logging.critical(error)
        return [], [error]

    async def get_digest(self, repository: str, tag: str) -> tuple[str | None, list[str]]:
        try:
            response = await self._session.get(
                self.url(repository, "manifests", tag),
                headers={"Accept": MANIFEST_V2},
            )
        except httpx.HTTPError as err:
            error = f"Error getting digest for {repository}:{tag}. Error: {err!r}"
            logging.error(error)
            return None, [error]

        if not response.is_success:
            error = (
                f"Error getting digest for {repository}:{tag}. "
                f"code: {response.status_code}. text: {response.text}"
            )
            logging.error(error)
            return None, [error]

        if self.config.digest_source == DigestSource.MANIFEST:
            digest = response.headers.get("Docker-Content-Digest")
        else:
            try:
                body = response.json()
            except ValueError:
                body = None
            config_section = body.get("config") if isinstance(body, dict) else None
            digest = (
                config_section.get("digest") if isinstance(config_section, dict) else None
            )

        if not digest:
            error = (
                f"Error getting {self.config.digest_source} digest for "
                f"{repository}:{tag}. Invalid response: {response.text}"
            )
            logging.error(error)
            return None, [error]
        return digest, []

    async def delete_manifest(self, repository: str, digest: str) -> tuple[bool, list[str]]:
        try:
            response = await self._session.delete(
                self.url(repository, "manifests", digest)
            )
        except httpx.HTTPError as err:
            error = f"Error deleting {repository}@{digest}. Error: {err!r}"
            logging.error(error)
            return False, [error]

        if response.is_success:
            logging.info(f"Digest {digest} deleted from {repository}!")
            return True, []

        logging.warning(
            f"Manifest {repository}@{digest} is waiting for garbage collection "
            f"or it cannot be deleted. code: {response.status_code}"
        )
        return False, []
