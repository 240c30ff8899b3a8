#!/usr/bin/env python3
"""
Backup pruner for S3-compatible buckets.

Lists the backup objects stored in each configured bucket, decides which of
them to keep under a tiered retention policy (most recent full backups, one
per year, month and week, and a window of differential backups) and, when
explicitly allowed, deletes the rest. Also offers a key search mode and a
presigned URL mode that share the same configuration.
"""
from __future__ import annotations

import argparse
import configparser
import logging
import re
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from object_store import (
    DEFAULT_PRESIGN_EXPIRY,
    DeletionResult,
    ListingError,
    StoredObject,
    create_s3_client,
    delete_keys,
    list_objects,
    presign_url,
    quiet_external_loggers,
    read_inventory_cache,
    write_inventory_cache,
)
from retention import (
    POLICY_FIELDS,
    RetentionPolicy,
    RetentionResult,
    TotalSummary,
    aggregate_totals,
    apply_retention_policy,
)


CONFIG_SECTION = "pruner"
PROFILE_SECTION_PREFIX = "pruner:"
BUCKET_KEY_PREFIX = "bucket."
LOCAL_CONFIG_SUFFIX = ".local.ini"
REDACTED = "***"
SECRET_KEYS = ("aws_access_key_id", "aws_secret_access_key")

DEFAULT_SETTINGS: Dict[str, str] = {
    "buckets": "",
    "prefix": "",
    "endpoint_url": "",
    "aws_region": "us-east-1",
    "aws_profile": "",
    "aws_access_key_id": "",
    "aws_secret_access_key": "",
    "force_path_style": "false",
    "full_backups": "1",
    "yearly_backups": "1",
    "monthly_backups": "12",
    "weekly_backups": "4",
    "differential_backups": "7",
    "dry_run": "true",
    "delete_non_retained": "false",
    "loop": "false",
    "poll_interval": "14400",
    "cache_dir": "",
    "use_cached_inventory": "false",
}

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""


@dataclass
class PrunerConfig:
    buckets: List[str]
    policy: RetentionPolicy = field(default_factory=RetentionPolicy)
    bucket_policies: Dict[str, RetentionPolicy] = field(default_factory=dict)
    prefix: str = ""
    endpoint_url: Optional[str] = None
    aws_region: Optional[str] = "us-east-1"
    aws_profile: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    force_path_style: bool = False
    dry_run: bool = True
    delete_non_retained: bool = False
    loop: bool = False
    poll_interval: int = 14400
    cache_dir: Optional[Path] = None
    use_cached_inventory: bool = False
    profile: str = "default"

    def policy_for(self, bucket: str) -> RetentionPolicy:
        return self.bucket_policies.get(bucket, self.policy)

    @property
    def deletion_authorized(self) -> bool:
        return self.delete_non_retained and not self.dry_run

    @property
    def title(self) -> str:
        return f"{self.endpoint_url or 'aws'} - {','.join(self.buckets)}"


def parse_args(argv: Optional[Iterable[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Apply a tiered retention policy to backups stored in S3-compatible buckets."
    )
    parser.add_argument(
        "mode",
        choices=sorted(MODES),
        help="Action to run: prune backups, search keys or presign a download URL.",
    )
    parser.add_argument(
        "arguments",
        nargs="*",
        metavar="KEY=VALUE",
        help=(
            "Mode arguments such as bucket=name or pattern=regex. Keys that are "
            "configuration settings (e.g. dry_run=false) override the config file."
        ),
    )
    parser.add_argument(
        "-c",
        "--config",
        type=Path,
        help="Path to an INI config file with a [pruner] section.",
    )
    parser.add_argument(
        "--local-config",
        type=Path,
        help=(
            "Optional INI file layered over --config. Defaults to "
            "<config>.local.ini next to the config file when present."
        ),
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"],
        help="Logging verbosity (default: INFO).",
    )
    parser.add_argument(
        "--loop",
        dest="loop",
        action="store_true",
        help="Run continuously, repeating the selected mode at a set interval.",
    )
    parser.add_argument(
        "--no-loop",
        dest="loop",
        action="store_false",
        help=argparse.SUPPRESS,
    )
    parser.set_defaults(loop=None)
    parser.add_argument(
        "--poll-interval",
        type=int,
        help="Seconds between runs in loop mode (default: 14400).",
    )
    return parser.parse_args(argv)


def parse_key_values(entries: Iterable[str]) -> Dict[str, str]:
    values: Dict[str, str] = {}
    for entry in entries:
        if "=" not in entry:
            raise ConfigurationError(f"Invalid argument (expected key=value): {entry}")
        key, value = entry.split("=", 1)
        key = key.strip().lower()
        if not key:
            raise ConfigurationError(f"Invalid argument (empty key): {entry}")
        values[key] = value.strip()
    return values


def default_local_config(config_path: Path) -> Path:
    return config_path.with_name(config_path.stem + LOCAL_CONFIG_SUFFIX)


def read_config_file(
    config_path: Path, local_path: Optional[Path] = None
) -> List[Tuple[str, Dict[str, str]]]:
    """Read the config file and its local override into named profiles.

    The [pruner] section is the base profile; every [pruner:<name>] section is
    an additional profile layered over it.
    """
    parser = configparser.ConfigParser(interpolation=None)
    read_files = parser.read(config_path)
    if not read_files:
        raise ConfigurationError(f"Config file {config_path} could not be read.")

    if local_path is None:
        candidate = default_local_config(config_path)
        local_path = candidate if candidate.is_file() else None
    if local_path is not None:
        if not parser.read(local_path):
            raise ConfigurationError(f"Local config file {local_path} could not be read.")
        logger.debug("Applied local config overrides from %s", local_path)

    if CONFIG_SECTION not in parser:
        raise ConfigurationError(
            f"Config file {config_path} is missing the [{CONFIG_SECTION}] section."
        )

    base = {k: v for k, v in parser[CONFIG_SECTION].items()}
    profiles: List[Tuple[str, Dict[str, str]]] = []
    for section in parser.sections():
        if not section.startswith(PROFILE_SECTION_PREFIX):
            continue
        name = section[len(PROFILE_SECTION_PREFIX) :].strip()
        if not name:
            raise ConfigurationError(f"Profile section [{section}] must be named.")
        profiles.append((name, {**base, **parser[section]}))

    return profiles or [("default", base)]


def merge_config(
    file_config: Optional[Dict[str, str]],
    overrides: Optional[Dict[str, str]] = None,
    *,
    loop: Optional[bool] = None,
    poll_interval: Optional[int] = None,
    profile: str = "default",
) -> PrunerConfig:
    settings = {**DEFAULT_SETTINGS, **(file_config or {}), **(overrides or {})}

    for key in settings:
        if key not in DEFAULT_SETTINGS and not key.startswith(BUCKET_KEY_PREFIX):
            raise ConfigurationError(f"Unknown configuration key: {key}")

    buckets = [name.strip() for name in settings["buckets"].split(",") if name.strip()]
    if not buckets:
        raise ConfigurationError("No buckets configured. Please check your config files.")

    policy = parse_policy({name: settings[name] for name in POLICY_FIELDS}, "retention")
    bucket_policies = _collect_bucket_policies(settings, policy)
    unknown = sorted(set(bucket_policies) - set(buckets))
    if unknown:
        raise ConfigurationError(
            f"Retention overrides given for unconfigured bucket(s): {', '.join(unknown)}"
        )

    poll_value = (
        poll_interval
        if poll_interval is not None
        else parse_int(settings["poll_interval"], "poll_interval")
    )
    if poll_value <= 0:
        raise ConfigurationError("poll_interval must be a positive integer.")

    cache_dir_value = settings["cache_dir"].strip()

    return PrunerConfig(
        buckets=buckets,
        policy=policy,
        bucket_policies=bucket_policies,
        prefix=settings["prefix"],
        endpoint_url=settings["endpoint_url"] or None,
        aws_region=settings["aws_region"] or None,
        aws_profile=settings["aws_profile"] or None,
        aws_access_key_id=settings["aws_access_key_id"] or None,
        aws_secret_access_key=settings["aws_secret_access_key"] or None,
        force_path_style=parse_bool(settings["force_path_style"]),
        dry_run=parse_bool(settings["dry_run"]),
        delete_non_retained=parse_bool(settings["delete_non_retained"]),
        loop=loop if loop is not None else parse_bool(settings["loop"]),
        poll_interval=poll_value,
        cache_dir=Path(cache_dir_value).expanduser() if cache_dir_value else None,
        use_cached_inventory=parse_bool(settings["use_cached_inventory"]),
        profile=profile,
    )


def parse_policy(values: Dict[str, str], context: str) -> RetentionPolicy:
    counts: Dict[str, int] = {}
    for name, value in values.items():
        amount = parse_int(value, f"{context}.{name}")
        if amount < 0:
            raise ConfigurationError(f"{context}.{name} must not be negative.")
        counts[name] = amount
    return RetentionPolicy(**counts)


def _collect_bucket_policies(
    settings: Dict[str, str], default_policy: RetentionPolicy
) -> Dict[str, RetentionPolicy]:
    grouped: Dict[str, Dict[str, str]] = {}
    for key, value in settings.items():
        if not key.startswith(BUCKET_KEY_PREFIX):
            continue
        name, _, policy_field = key[len(BUCKET_KEY_PREFIX) :].rpartition(".")
        if not name or policy_field not in POLICY_FIELDS:
            raise ConfigurationError(
                "Bucket overrides must use the bucket.<name>.<retention field> format "
                f"(got {key})."
            )
        grouped.setdefault(name, {})[policy_field] = value

    policies: Dict[str, RetentionPolicy] = {}
    for name, fields in grouped.items():
        merged = {policy_field: str(getattr(default_policy, policy_field)) for policy_field in POLICY_FIELDS}
        merged.update(fields)
        policies[name] = parse_policy(merged, f"bucket.{name}")
    return policies


def parse_bool(value: str) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"Invalid boolean value: {value}")


def parse_int(value: str, name: str) -> int:
    try:
        return int(value)
    except ValueError as error:
        raise ConfigurationError(f"{name} must be an integer.") from error


def redacted_settings(config: PrunerConfig) -> Dict[str, object]:
    settings: Dict[str, object] = {
        "profile": config.profile,
        "buckets": config.buckets,
        "prefix": config.prefix,
        "endpoint_url": config.endpoint_url,
        "aws_region": config.aws_region,
        "aws_profile": config.aws_profile,
        "force_path_style": config.force_path_style,
        "policy": config.policy,
        "bucket_policies": config.bucket_policies,
        "dry_run": config.dry_run,
        "delete_non_retained": config.delete_non_retained,
    }
    for key in SECRET_KEYS:
        settings[key] = REDACTED if getattr(config, key) else None
    return settings


def client_for(config: PrunerConfig):
    return create_s3_client(
        aws_profile=config.aws_profile,
        aws_region=config.aws_region,
        endpoint_url=config.endpoint_url,
        access_key_id=config.aws_access_key_id,
        secret_access_key=config.aws_secret_access_key,
        force_path_style=config.force_path_style,
    )


def configure_logging(log_level: str) -> None:
    level = getattr(logging, log_level.upper(), None)
    if level is None:
        raise ValueError(f"Invalid log level: {log_level}")
    logging.basicConfig(level=level)
    quiet_external_loggers()


@dataclass
class BucketResult:
    bucket: str
    retention: Optional[RetentionResult] = None
    deletion: Optional[DeletionResult] = None
    error: Optional[str] = None


@dataclass
class RunSummary:
    profile: str
    by_bucket: Dict[str, BucketResult] = field(default_factory=dict)
    total: TotalSummary = field(default_factory=TotalSummary)

    @property
    def failed_buckets(self) -> List[str]:
        return [name for name, result in self.by_bucket.items() if result.error]

    @property
    def failed_deletions(self) -> int:
        return sum(
            len(result.deletion.failed)
            for result in self.by_bucket.values()
            if result.deletion is not None
        )

    @property
    def exit_code(self) -> int:
        # per-key deletion failures are reported, not fatal
        return 1 if self.failed_buckets else 0


def load_inventory(
    client, bucket: str, config: PrunerConfig, *, log: logging.Logger = logger
) -> List[StoredObject]:
    if config.cache_dir is not None and config.use_cached_inventory:
        cached = read_inventory_cache(config.cache_dir, bucket)
        if cached is not None:
            log.info("Using cached inventory for %s (%d objects)", bucket, len(cached))
            return cached

    objects = list_objects(client, bucket, config.prefix)

    if config.cache_dir is not None:
        try:
            path = write_inventory_cache(config.cache_dir, bucket, objects)
            log.debug("Wrote inventory snapshot %s", path)
        except OSError as error:
            log.warning("Failed to write inventory snapshot for %s: %s", bucket, error)
    return objects


def process_bucket(
    client, bucket: str, config: PrunerConfig, *, log: logging.Logger = logger
) -> BucketResult:
    log.info("Processing bucket: %s", bucket)
    try:
        objects = load_inventory(client, bucket, config, log=log)
    except ListingError as error:
        log.error("Error processing bucket %s: %s", bucket, error)
        return BucketResult(bucket=bucket, error=str(error))

    result = apply_retention_policy(objects, bucket, config.policy_for(bucket), logger=log)
    summary = result.summary
    log.info(
        "Retention summary for %s: %d backup(s), %d object(s) retained, %d to delete, %d skipped",
        bucket,
        summary.total_backups,
        summary.retained_count,
        summary.delete_count,
        len(result.skipped_keys),
    )
    for object_name, object_summary in summary.by_object.items():
        log.info(
            "  %s: full=%d yearly=%d monthly=%d weekly=%d differential=%d retained=%d delete=%d",
            object_name,
            object_summary.full_backups,
            object_summary.yearly_backups,
            object_summary.monthly_backups,
            object_summary.weekly_backups,
            object_summary.differential_backups,
            object_summary.retained_count,
            object_summary.delete_count,
        )

    bucket_result = BucketResult(bucket=bucket, retention=result)
    if not result.backups_to_delete:
        return bucket_result

    action = "Deleting" if config.deletion_authorized else "Would delete"
    for backup in result.backups_to_delete:
        log.info(
            "%s backup s3://%s/%s (%s, %s)",
            action,
            bucket,
            backup.key,
            backup.type,
            backup.timestamp.isoformat(sep=" "),
        )

    if config.deletion_authorized:
        deletion = delete_keys(client, bucket, result.delete_keys)
        log.info(
            "Deleted %d object(s) from %s; %d failed.",
            len(deletion.successful),
            bucket,
            len(deletion.failed),
        )
        for failure in deletion.failed:
            log.warning("Failed to delete s3://%s/%s: %s", bucket, failure.key, failure.error)
        bucket_result.deletion = deletion

    return bucket_result


def process_buckets(
    config: PrunerConfig, client, *, log: logging.Logger = logger
) -> RunSummary:
    run = RunSummary(profile=config.profile)
    for bucket in config.buckets:
        run.by_bucket[bucket] = process_bucket(client, bucket, config, log=log)
    run.total = aggregate_totals(
        result.retention.summary if result.retention else None
        for result in run.by_bucket.values()
    )
    return run


ClientFactory = Callable[[PrunerConfig], object]


class ActionMode:
    """A selectable CLI action run once per configuration profile."""

    name = ""
    parameters: Tuple[str, ...] = ()

    def __init__(
        self,
        params: Optional[Dict[str, str]] = None,
        *,
        client_factory: ClientFactory = client_for,
        log: logging.Logger = logger,
    ) -> None:
        self.params = dict(params or {})
        self.client_factory = client_factory
        self.log = log
        self.validate()

    def validate(self) -> None:
        pass

    def run(self, config: PrunerConfig):
        raise NotImplementedError

    def report(self, result) -> int:
        return 0


class PruneMode(ActionMode):
    name = "prune"

    def run(self, config: PrunerConfig) -> RunSummary:
        self.log.info("Running %s....", config.title)
        if config.dry_run:
            self.log.info("DRY RUN MODE - No deletions will be performed")
        client = self.client_factory(config)
        return process_buckets(config, client, log=self.log)

    def report(self, result: RunSummary) -> int:
        total = result.total
        self.log.info(
            "Total summary: %d backup(s), %d object(s) retained, %d to delete.",
            total.total_backups,
            total.retained_count,
            total.delete_count,
        )
        if result.failed_buckets:
            self.log.error("Failed bucket(s): %s", ", ".join(result.failed_buckets))
        if result.failed_deletions:
            self.log.warning("%d object(s) could not be deleted", result.failed_deletions)
        return result.exit_code


class SearchMode(ActionMode):
    name = "search"
    parameters = ("bucket", "pattern", "prefix")

    def validate(self) -> None:
        if not self.params.get("bucket"):
            raise ConfigurationError("search mode requires bucket=<name>.")
        pattern = self.params.get("pattern")
        try:
            self.pattern = re.compile(pattern) if pattern else None
        except re.error as error:
            raise ConfigurationError(f"Invalid search pattern {pattern!r}: {error}") from error

    def run(self, config: PrunerConfig) -> List[str]:
        bucket = self.params["bucket"]
        if bucket not in config.buckets:
            self.log.info("Skipping %s with buckets %s", config.title, config.buckets)
            return []
        self.log.info("Searching %s in bucket %s", config.endpoint_url or "aws", bucket)
        client = self.client_factory(config)
        objects = list_objects(client, bucket, self.params.get("prefix", ""))
        return [obj.key for obj in objects if self.pattern is None or self.pattern.search(obj.key)]

    def report(self, result: List[str]) -> int:
        for key in result:
            print(key)
        return 0


class PresignMode(ActionMode):
    name = "presign"
    parameters = ("bucket", "key", "expires")

    def validate(self) -> None:
        for required in ("bucket", "key"):
            if not self.params.get(required):
                raise ConfigurationError(f"presign mode requires {required}=<value>.")
        self.expires = parse_int(self.params.get("expires", str(DEFAULT_PRESIGN_EXPIRY)), "expires")
        if self.expires <= 0:
            raise ConfigurationError("expires must be a positive number of seconds.")

    def run(self, config: PrunerConfig) -> Optional[str]:
        bucket = self.params["bucket"]
        if bucket not in config.buckets:
            self.log.info("Skipping %s with buckets %s", config.title, config.buckets)
            return None
        client = self.client_factory(config)
        return presign_url(client, bucket, self.params["key"], self.expires)

    def report(self, result: Optional[str]) -> int:
        if result:
            print(result)
        return 0


MODES: Dict[str, type] = {
    mode.name: mode for mode in (PruneMode, SearchMode, PresignMode)
}


def split_mode_arguments(
    mode_name: str, arguments: Dict[str, str]
) -> Tuple[Dict[str, str], Dict[str, str]]:
    """Separate mode parameters from configuration overrides."""
    parameters = MODES[mode_name].parameters
    mode_params: Dict[str, str] = {}
    overrides: Dict[str, str] = {}
    for key, value in arguments.items():
        if key in parameters:
            mode_params[key] = value
        elif key in DEFAULT_SETTINGS or key.startswith(BUCKET_KEY_PREFIX):
            overrides[key] = value
        else:
            raise ConfigurationError(f"Unknown argument for {mode_name} mode: {key}")
    return mode_params, overrides


def run_cycle(mode: ActionMode, configs: Sequence[PrunerConfig]) -> int:
    exit_code = 0
    for config in configs:
        try:
            result = mode.run(config)
        except Exception as error:  # keep generic so one profile cannot stop the others
            logger.exception("%s failed for %s: %s", mode.name, config.title, error)
            exit_code = 1
            continue
        exit_code = max(exit_code, mode.report(result))
        if (
            isinstance(mode, PruneMode)
            and config.dry_run
            and config.delete_non_retained
        ):
            logger.info("To perform actual deletions, set dry_run = false in your config")
    return exit_code


def load_configs(args: argparse.Namespace) -> Tuple[ActionMode, List[PrunerConfig]]:
    mode_params, overrides = split_mode_arguments(args.mode, parse_key_values(args.arguments))

    profiles: List[Tuple[str, Optional[Dict[str, str]]]]
    if args.config:
        profiles = list(read_config_file(args.config, args.local_config))
    else:
        if args.local_config:
            raise ConfigurationError("--local-config requires --config.")
        profiles = [("default", None)]

    configs = [
        merge_config(
            file_cfg,
            overrides,
            loop=args.loop,
            poll_interval=args.poll_interval,
            profile=name,
        )
        for name, file_cfg in profiles
    ]
    mode = MODES[args.mode](mode_params)
    return mode, configs


def main(argv: Optional[Iterable[str]] = None) -> int:
    args = parse_args(argv)
    try:
        configure_logging(args.log_level)
    except ValueError as error:
        logging.error("%s", error)
        return 2

    try:
        mode, configs = load_configs(args)
    except ConfigurationError as error:
        logging.error("%s", error)
        return 2

    for config in configs:
        logger.info("Configuration loaded: %s", redacted_settings(config))

    schedule = configs[0]
    while True:
        exit_code = run_cycle(mode, configs)
        if not schedule.loop:
            return exit_code
        logger.debug("Next run in %d seconds.", schedule.poll_interval)
        time.sleep(schedule.poll_interval)


if __name__ == "__main__":
    sys.exit(main())
