"""
Retention decisions for backup objects stored in a bucket.

Object keys are parsed into backup descriptors, grouped into logical backups
(all parts of one backup share a backup id) and evaluated per object name
against a tiered policy: most recent full backups, one per year, one per
month, one per week and a trailing window of differential backups.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union


BACKUP_NAME_PATTERN = re.compile(
    r"^(?P<name>.+)_(?P<date>\d{8})_(?P<time>\d{6})-(?P<kind>\w+)(?:-(?P<part>\d+))?\..*$"
)
TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"
DISPLAY_FORMAT = "%Y-%m-%d %H:%M:%S"
FULL_BACKUP_TYPE = "full"

logger = logging.getLogger(__name__)


class ParseError(ValueError):
    """Raised when an object key does not follow the backup naming convention."""


@dataclass(frozen=True)
class RetentionPolicy:
    full_backups: int = 1
    yearly_backups: int = 1
    monthly_backups: int = 12
    weekly_backups: int = 4
    differential_backups: int = 7


POLICY_FIELDS = (
    "full_backups",
    "yearly_backups",
    "monthly_backups",
    "weekly_backups",
    "differential_backups",
)


@dataclass(frozen=True)
class BackupDescriptor:
    key: str
    bucket_name: str
    object_name: str
    date: str
    time: str
    timestamp: datetime
    type: str
    part_number: int = 1

    @property
    def backup_id(self) -> str:
        return f"{self.object_name}_{self.date}_{self.time}"

    @property
    def year(self) -> int:
        return self.timestamp.year

    @property
    def month_key(self) -> str:
        return self.timestamp.strftime("%Y-%m")

    @property
    def week_key(self) -> str:
        iso_year, iso_week, _ = self.timestamp.isocalendar()
        return f"{iso_year}-W{iso_week:02d}"

    @property
    def is_full(self) -> bool:
        return self.type == FULL_BACKUP_TYPE


def parse_backup_key(key: str, bucket_name: str) -> BackupDescriptor:
    segments = key.split("/")
    filename = segments[-1]

    match = BACKUP_NAME_PATTERN.match(filename)
    if match is None:
        raise ParseError(f"Invalid backup name format: {key}")

    if len(segments) < 2:
        raise ParseError(f"Backup key has no directory segment to derive its type: {key}")
    type_segments = segments[-2].split("-")
    if len(type_segments) < 2 or not type_segments[1]:
        raise ParseError(f"Backup directory does not encode a backup type: {key}")

    date, time = match.group("date"), match.group("time")
    try:
        timestamp = datetime.strptime(date + time, TIMESTAMP_FORMAT)
    except ValueError as error:
        raise ParseError(f"Invalid date/time in backup name: {date}{time}") from error

    part = match.group("part")
    return BackupDescriptor(
        key=key,
        bucket_name=bucket_name,
        object_name=match.group("name"),
        date=date,
        time=time,
        timestamp=timestamp,
        type=type_segments[1].lower(),
        part_number=int(part) if part else 1,
    )


def _object_key(item: Union[str, Mapping[str, object], object]) -> str:
    if isinstance(item, str):
        return item
    if isinstance(item, Mapping):
        return str(item["Key"])
    return str(getattr(item, "key"))


def parse_backups(
    objects: Iterable[Union[str, Mapping[str, object], object]],
    bucket_name: str,
    *,
    logger: logging.Logger = logger,
) -> Tuple[List[BackupDescriptor], List[str]]:
    """Parse every listed object, skipping keys that are not backups.

    ``objects`` may hold plain keys, listing dictionaries with a ``Key`` entry
    or objects exposing a ``key`` attribute.
    """
    descriptors: List[BackupDescriptor] = []
    skipped: List[str] = []
    for item in objects:
        key = _object_key(item)
        try:
            descriptors.append(parse_backup_key(key, bucket_name))
        except ParseError as error:
            logger.warning("Skipping invalid backup %s: %s", key, error)
            skipped.append(key)
    return descriptors, skipped


@dataclass
class BackupGroup:
    backup_id: str
    parts: List[BackupDescriptor] = field(default_factory=list)

    @property
    def representative(self) -> BackupDescriptor:
        return self.parts[0]

    @property
    def timestamp(self) -> datetime:
        return self.representative.timestamp

    @property
    def is_full(self) -> bool:
        return self.representative.is_full

    @property
    def keys(self) -> List[str]:
        return [part.key for part in self.parts]


def group_backups(descriptors: Iterable[BackupDescriptor]) -> Dict[str, List[BackupGroup]]:
    by_object: Dict[str, Dict[str, BackupGroup]] = {}
    for descriptor in descriptors:
        groups = by_object.setdefault(descriptor.object_name, {})
        group = groups.get(descriptor.backup_id)
        if group is None:
            group = groups[descriptor.backup_id] = BackupGroup(descriptor.backup_id)
        group.parts.append(descriptor)
    return {name: list(groups.values()) for name, groups in by_object.items()}


@dataclass(frozen=True)
class RetentionState:
    """Accumulated decisions for one object, replaced (never mutated) by each pass.

    ``years``, ``months`` and ``weeks`` hold the calendar slots already taken.
    The most recent full backups take the slots of their own year, month and
    week, so the calendar tiers only add backups from other periods.
    """

    retained: FrozenSet[str] = frozenset()
    years: FrozenSet[int] = frozenset()
    months: FrozenSet[str] = frozenset()
    weeks: FrozenSet[str] = frozenset()
    full_backups: int = 0
    yearly_backups: int = 0
    monthly_backups: int = 0
    weekly_backups: int = 0
    differential_backups: int = 0


def _retain_most_recent_full(
    groups: Sequence[BackupGroup], policy: RetentionPolicy, state: RetentionState
) -> RetentionState:
    newest_full = [group for group in reversed(groups) if group.is_full]
    kept = newest_full[: policy.full_backups]
    return replace(
        state,
        retained=state.retained | {group.backup_id for group in kept},
        years=state.years | {group.representative.year for group in kept},
        months=state.months | {group.representative.month_key for group in kept},
        weeks=state.weeks | {group.representative.week_key for group in kept},
        full_backups=state.full_backups + len(kept),
    )


def _retain_yearly_and_monthly(
    groups: Sequence[BackupGroup], policy: RetentionPolicy, state: RetentionState
) -> RetentionState:
    # Oldest first: the earliest full backup of a year or month claims the slot.
    years = set(state.years)
    months = set(state.months)
    kept: Set[str] = set()
    yearly = monthly = 0
    for group in groups:
        if not group.is_full or group.backup_id in state.retained:
            continue
        year = group.representative.year
        if year not in years and len(years) < policy.yearly_backups:
            years.add(year)
            yearly += 1
            kept.add(group.backup_id)
        month = group.representative.month_key
        if month not in months and len(months) < policy.monthly_backups:
            months.add(month)
            monthly += 1
            kept.add(group.backup_id)
    return replace(
        state,
        retained=state.retained | kept,
        years=frozenset(years),
        months=frozenset(months),
        yearly_backups=state.yearly_backups + yearly,
        monthly_backups=state.monthly_backups + monthly,
    )


def _retain_weekly_and_differential(
    groups: Sequence[BackupGroup], policy: RetentionPolicy, state: RetentionState
) -> RetentionState:
    weeks = set(state.weeks)
    kept: Set[str] = set()
    weekly = differential = 0
    for group in reversed(groups):
        if group.is_full:
            if group.backup_id in state.retained:
                continue
            week = group.representative.week_key
            if week not in weeks and len(weeks) < policy.weekly_backups:
                weeks.add(week)
                weekly += 1
                kept.add(group.backup_id)
        elif differential < policy.differential_backups:
            differential += 1
            kept.add(group.backup_id)
    return replace(
        state,
        retained=state.retained | kept,
        weeks=frozenset(weeks),
        weekly_backups=state.weekly_backups + weekly,
        differential_backups=state.differential_backups + differential,
    )


RETENTION_PASSES = (
    _retain_most_recent_full,
    _retain_yearly_and_monthly,
    _retain_weekly_and_differential,
)


@dataclass(frozen=True)
class RetainedBackup:
    key: str
    date: str
    type: str
    part: int


@dataclass
class ObjectSummary:
    total_backups: int = 0
    full_backups: int = 0
    yearly_backups: int = 0
    monthly_backups: int = 0
    weekly_backups: int = 0
    differential_backups: int = 0
    retained_count: int = 0
    delete_count: int = 0
    retained_backups: List[RetainedBackup] = field(default_factory=list)


def evaluate_timeline(
    groups: Sequence[BackupGroup], policy: RetentionPolicy
) -> Tuple[FrozenSet[str], ObjectSummary]:
    """Decide which backup groups of one object survive the policy.

    Returns the ids of the retained groups and the object's summary. A group
    is retained as a whole; it is never revisited once a pass has kept it.
    """
    ordered = sorted(groups, key=lambda group: group.timestamp)
    state = RetentionState()
    for retention_pass in RETENTION_PASSES:
        state = retention_pass(ordered, policy, state)

    retained_parts = [
        part for group in ordered if group.backup_id in state.retained for part in group.parts
    ]
    total_parts = sum(len(group.parts) for group in ordered)
    summary = ObjectSummary(
        total_backups=len(ordered),
        full_backups=state.full_backups,
        yearly_backups=state.yearly_backups,
        monthly_backups=state.monthly_backups,
        weekly_backups=state.weekly_backups,
        differential_backups=state.differential_backups,
        retained_count=len(retained_parts),
        delete_count=total_parts - len(retained_parts),
        retained_backups=[
            RetainedBackup(
                key=part.key,
                date=part.timestamp.strftime(DISPLAY_FORMAT),
                type=part.type,
                part=part.part_number,
            )
            for part in retained_parts
        ],
    )
    return state.retained, summary


@dataclass
class BucketSummary:
    total_backups: int = 0
    retained_count: int = 0
    delete_count: int = 0
    by_object: Dict[str, ObjectSummary] = field(default_factory=dict)


@dataclass
class TotalSummary:
    total_backups: int = 0
    retained_count: int = 0
    delete_count: int = 0


def summarize_bucket(by_object: Mapping[str, ObjectSummary]) -> BucketSummary:
    summary = BucketSummary(by_object=dict(by_object))
    for object_summary in by_object.values():
        summary.total_backups += object_summary.total_backups
        summary.retained_count += object_summary.retained_count
        summary.delete_count += object_summary.delete_count
    return summary


def aggregate_totals(summaries: Iterable[Optional[BucketSummary]]) -> TotalSummary:
    total = TotalSummary()
    for summary in summaries:
        if summary is None:
            continue
        total.total_backups += summary.total_backups
        total.retained_count += summary.retained_count
        total.delete_count += summary.delete_count
    return total


@dataclass
class RetentionResult:
    retained_keys: List[str]
    backups_to_delete: List[BackupDescriptor]
    summary: BucketSummary
    skipped_keys: List[str] = field(default_factory=list)

    @property
    def delete_keys(self) -> List[str]:
        return [backup.key for backup in self.backups_to_delete]


def apply_retention_policy(
    objects: Iterable[Union[str, Mapping[str, object], object]],
    bucket_name: str,
    policy: RetentionPolicy,
    *,
    logger: logging.Logger = logger,
) -> RetentionResult:
    descriptors, skipped = parse_backups(objects, bucket_name, logger=logger)

    retained_ids: FrozenSet[str] = frozenset()
    by_object: Dict[str, ObjectSummary] = {}
    for object_name, groups in group_backups(descriptors).items():
        object_retained, object_summary = evaluate_timeline(groups, policy)
        retained_ids = retained_ids | object_retained
        by_object[object_name] = object_summary
        logger.debug(
            "%s/%s: retaining %d of %d backup object(s)",
            bucket_name,
            object_name,
            object_summary.retained_count,
            object_summary.retained_count + object_summary.delete_count,
        )

    retained_keys: List[str] = []
    to_delete: List[BackupDescriptor] = []
    for descriptor in descriptors:
        if descriptor.backup_id in retained_ids:
            retained_keys.append(descriptor.key)
        else:
            to_delete.append(descriptor)

    return RetentionResult(
        retained_keys=retained_keys,
        backups_to_delete=to_delete,
        summary=summarize_bucket(by_object),
        skipped_keys=skipped,
    )
