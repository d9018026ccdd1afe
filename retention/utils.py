import base64
import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from enum import StrEnum
from logging import LogRecord

from retention.config import LOG_FORMAT, Args, RegistryClientConfig
from retention.models import COUNT_PATTERN, PurgeReport, RepositoryReport, RetentionRule

MANIFEST_V2 = "application/vnd.docker.distribution.manifest.v2+json"


class Colors(StrEnum):
    RED = "\033[31m"
    CRED = "\033[91m"
    YELLOW = "\033[33m"
    RESET = "\033[0m"


class ColoredFormatter(logging.Formatter):
    def __init__(self, fmt: str | None = None, *args, **kwargs) -> None:
        self.format_ = fmt
        self.FORMATS = {
            logging.WARNING: f"{Colors.YELLOW}{self.format_}{Colors.RESET}",
            logging.ERROR: f"{Colors.RED}{self.format_}{Colors.RESET}",
            logging.CRITICAL: f"{Colors.CRED}{self.format_}{Colors.RESET}",
        }
        super().__init__(fmt, *args, **kwargs)

    def format(self, record: LogRecord) -> str:
        log_fmt = self.FORMATS.get(record.levelno, self.format_)
        formatter = logging.Formatter(log_fmt)
        return formatter.format(record)


def init_logger(args: Args) -> None:
    logging.getLogger("httpx").disabled = not args.http_logs

    args.log_file.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(args.log_file)
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(ColoredFormatter(LOG_FORMAT))
    logging.basicConfig(
        level=logging.INFO, handlers=[file_handler, stream_handler], force=True
    )


def build_headers(config: RegistryClientConfig) -> dict[str, str]:
    headers = {
        "Accept": MANIFEST_V2,
        "User-Agent": "Registry retention cleaner",
        "Docker-Distribution-API-Version": "registry/2.0",
    }
    if config.username and config.password:
        basic_auth = base64.standard_b64encode(
            f"{config.username}:{config.password}".encode()
        ).decode()
        headers["Authorization"] = f"Basic {basic_auth}"
    return headers


def true_utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


def split_numeric_tags(tags: Iterable[str]) -> tuple[list[int], list[str]]:
    numeric: list[int] = []
    non_numeric: list[str] = []
    for tag in tags:
        if COUNT_PATTERN.fullmatch(tag):
            numeric.append(int(tag))
        else:
            non_numeric.append(tag)
    return numeric, non_numeric


def select_for_deletion(
    tags: Iterable[str], keep_count: int, repository: str = ""
) -> list[int]:
    """Return the oldest numeric tags beyond the newest ``keep_count``.

    Non-numeric tags are never candidates. Tags such as "01" and "1" are
    distinct entries with the same value and are not deduplicated.
    """
    numeric, non_numeric = split_numeric_tags(tags)
    for tag in non_numeric:
        logging.warning(f"Tag {repository}:{tag} is not numeric, it will be kept")

    if keep_count >= len(numeric):
        return []
    return sorted(numeric)[: len(numeric) - keep_count]


def make_repo_stats(
    rule: RetentionRule,
    tags: list[str],
    candidates: list[int],
    purge_report: PurgeReport,
) -> RepositoryReport:
    _, non_numeric = split_numeric_tags(tags)
    return RepositoryReport(
        repository=rule.repository,
        keep_count=rule.keep_count,
        tags_found=len(tags),
        candidates=candidates,
        skipped_non_numeric=non_numeric,
        attempted=purge_report.attempted,
        deleted=purge_report.deleted,
        retained=purge_report.retained,
        unresolved=purge_report.unresolved,
        errors=purge_report.errors,
    )
