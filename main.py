import asyncio
import logging
import sys

from retention.cleaner import cleanup_registry
from retention.config import (
    Args,
    ConfigError,
    RegistryClientConfig,
    load_rules,
)
from retention.models import CleanupResult, RetentionRule
from retention.utils import init_logger

EXIT_CONFIG_ERROR = 2


async def perform_cleanup(
    rules: dict[str, RetentionRule], config: RegistryClientConfig, args: Args
) -> CleanupResult:
    result = await cleanup_registry(rules, config, dry_run=args.dry_run)
    logging.info(
        f"Processed {len(result.repositories)} repositories: {result.deleted} deleted, "
        f"{result.retained} retained, {result.unresolved} unresolved, "
        f"{len(result.errors)} errors"
    )
    return result


async def watch(
    rules: dict[str, RetentionRule], config: RegistryClientConfig, args: Args
) -> None:
    while True:
        await perform_cleanup(rules, config, args)
        await asyncio.sleep(60 * args.interval_minutes)


def run(argv: list[str] | None = None) -> None:
    args = Args.from_args(argv)
    init_logger(args)
    try:
        config = RegistryClientConfig.from_env()
        rules = load_rules(args.rules)
    except ConfigError as err:
        logging.critical(str(err))
        sys.exit(EXIT_CONFIG_ERROR)

    if args.dry_run:
        logging.warning("Running in dry-run mode, found tags will not be deleted")
    try:
        if not args.watch:
            logging.warning("Running in manual mode; One-time cleanup")
            asyncio.run(perform_cleanup(rules, config, args))
        else:
            asyncio.run(watch(rules, config, args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
