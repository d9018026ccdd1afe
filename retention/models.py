import re
from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator

COUNT_PATTERN = re.compile(r"[+-]?\d+", re.ASCII)


class DigestSource(StrEnum):
    CONFIG = "config"
    MANIFEST = "manifest"


class TagState(StrEnum):
    SELECTED = "selected"
    UNRESOLVED = "unresolved"
    DELETED = "deleted"
    RETAINED = "retained"


class RetentionRule(BaseModel):
    repository: str
    keep_count: int = Field(ge=0)

    @field_validator("repository")
    @classmethod
    def strip_repository_name(cls, repository: str) -> str:
        repository = repository.strip().strip("/")
        if not repository:
            raise ValueError("repository name must not be empty")
        return repository

    @field_validator("keep_count", mode="before")
    @classmethod
    def parse_keep_count(cls, value: Any) -> int:
        if isinstance(value, bool):
            raise ValueError(f"retention count must be an integer, got {value!r}")
        if isinstance(value, int):
            return value
        if isinstance(value, str) and COUNT_PATTERN.fullmatch(value.strip()):
            return int(value)
        raise ValueError(f"retention count must be a decimal integer, got {value!r}")


class TagResult(BaseModel):
    tag: int
    state: TagState
    digest: str = ""


class PurgeReport(BaseModel):
    repository: str
    results: list[TagResult] = []
    errors: list[str] = []

    def count(self, state: TagState) -> int:
        return sum(1 for result in self.results if result.state == state)

    @property
    def attempted(self) -> int:
        return len(self.results) - self.count(TagState.SELECTED)

    @property
    def deleted(self) -> int:
        return self.count(TagState.DELETED)

    @property
    def retained(self) -> int:
        return self.count(TagState.RETAINED)

    @property
    def unresolved(self) -> int:
        return self.count(TagState.UNRESOLVED)


class RepositoryReport(BaseModel):
    repository: str
    keep_count: int
    tags_found: int = 0
    candidates: list[int] = []
    skipped_non_numeric: list[str] = []
    attempted: int = 0
    deleted: int = 0
    retained: int = 0
    unresolved: int = 0
    errors: list[str] = []
    success: bool = True


class CleanupResult(BaseModel):
    started_at: datetime
    finished_at: datetime
    dry_run: bool = False
    repositories: list[RepositoryReport]

    @property
    def deleted(self) -> int:
        return sum(report.deleted for report in self.repositories)

    @property
    def retained(self) -> int:
        return sum(report.retained for report in self.repositories)

    @property
    def unresolved(self) -> int:
        return sum(report.unresolved for report in self.repositories)

    @property
    def errors(self) -> list[str]:
        return [error for report in self.repositories for error in report.errors]
