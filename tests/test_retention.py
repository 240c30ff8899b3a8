from datetime import datetime, timedelta
from typing import Dict, List

import pytest

from retention import (
    BackupDescriptor,
    BucketSummary,
    ObjectSummary,
    ParseError,
    RetentionPolicy,
    aggregate_totals,
    apply_retention_policy,
    evaluate_timeline,
    group_backups,
    parse_backup_key,
    parse_backups,
    summarize_bucket,
)


def full_key(name: str, stamp: str, part: int = 0) -> str:
    suffix = f"-{part}" if part else ""
    return f"backups-full/{name}_{stamp}-full{suffix}.bak"


def diff_key(name: str, stamp: str) -> str:
    return f"backups-diff/{name}_{stamp}-diff.bak"


def policy(**overrides: int) -> RetentionPolicy:
    values = dict(
        full_backups=0,
        yearly_backups=0,
        monthly_backups=0,
        weekly_backups=0,
        differential_backups=0,
    )
    values.update(overrides)
    return RetentionPolicy(**values)


def daily_full_keys(name: str, start: datetime, days: int) -> List[str]:
    return [
        full_key(name, (start + timedelta(days=offset)).strftime("%Y%m%d_%H%M%S"))
        for offset in range(days)
    ]


ORDERS_FULLS = [
    full_key("Orders", "20230101_000000"),
    full_key("Orders", "20230601_000000"),
    full_key("Orders", "20240101_000000"),
]


def test_parse_backup_key_extracts_fields() -> None:
    backup = parse_backup_key("backups-full/Orders_20240101_120000-full.bak", "bucket")

    assert backup.object_name == "Orders"
    assert backup.type == "full"
    assert backup.date == "20240101"
    assert backup.time == "120000"
    assert backup.part_number == 1
    assert backup.bucket_name == "bucket"
    assert backup.timestamp == datetime(2024, 1, 1, 12, 0, 0)
    assert backup.backup_id == "Orders_20240101_120000"
    assert backup.is_full


def test_parse_backup_key_reads_part_number_and_lowercases_type() -> None:
    backup = parse_backup_key("Backups-DIFF/Sales_Db_20240315_235959-diff-3.bak.gz", "bucket")

    assert backup.object_name == "Sales_Db"
    assert backup.type == "diff"
    assert backup.part_number == 3
    assert not backup.is_full
    assert backup.month_key == "2024-03"
    assert backup.week_key == "2024-W11"
    assert backup.year == 2024


def test_week_key_uses_iso_year() -> None:
    backup = parse_backup_key(full_key("Orders", "20241230_010000"), "bucket")
    assert backup.week_key == "2025-W01"


@pytest.mark.parametrize(
    "key",
    [
        "backups-full/Orders_2024-bad.bak",
        "backups-full/Orders_20240101120000-full.bak",
        "backups-full/Orders_20240101_120000-full",
        "backups-full/Orders_20241301_120000-full.bak",
        "backups-full/Orders_20240101_250000-full.bak",
        "Orders_20240101_120000-full.bak",
        "backups/Orders_20240101_120000-full.bak",
    ],
)
def test_parse_backup_key_rejects_malformed_keys(key: str) -> None:
    with pytest.raises(ParseError):
        parse_backup_key(key, "bucket")


def test_parse_backups_skips_invalid_keys_with_warning(caplog: pytest.LogCaptureFixture) -> None:
    keys = [
        "backups-full/Orders_20240101_120000-full.bak",
        "backups-full/Orders_2024-bad.bak",
        {"Key": "backups-diff/Orders_20240102_120000-diff.bak"},
    ]

    with caplog.at_level("WARNING"):
        descriptors, skipped = parse_backups(keys, "bucket")

    assert [d.key for d in descriptors] == [
        "backups-full/Orders_20240101_120000-full.bak",
        "backups-diff/Orders_20240102_120000-diff.bak",
    ]
    assert skipped == ["backups-full/Orders_2024-bad.bak"]
    assert "Skipping invalid backup backups-full/Orders_2024-bad.bak" in caplog.text


def test_group_backups_groups_by_object_then_backup_id() -> None:
    keys = [
        full_key("Orders", "20240101_000000", part=1),
        full_key("Customers", "20240101_000000"),
        full_key("Orders", "20240101_000000", part=2),
        diff_key("Orders", "20240102_000000"),
    ]
    descriptors, _ = parse_backups(keys, "bucket")

    grouped = group_backups(descriptors)

    assert sorted(grouped) == ["Customers", "Orders"]
    orders = {group.backup_id: group for group in grouped["Orders"]}
    assert sorted(orders) == ["Orders_20240101_000000", "Orders_20240102_000000"]
    assert [part.part_number for part in orders["Orders_20240101_000000"].parts] == [1, 2]


def test_newest_full_fills_the_only_yearly_slot() -> None:
    result = apply_retention_policy(
        ORDERS_FULLS, "bucket", policy(full_backups=1, yearly_backups=1)
    )

    assert result.retained_keys == [ORDERS_FULLS[2]]
    assert sorted(result.delete_keys) == sorted(ORDERS_FULLS[:2])


def test_yearly_slots_go_to_earliest_backup_of_each_year() -> None:
    result = apply_retention_policy(ORDERS_FULLS, "bucket", policy(yearly_backups=2))

    assert result.retained_keys == [ORDERS_FULLS[0], ORDERS_FULLS[2]]
    assert result.delete_keys == [ORDERS_FULLS[1]]
    assert result.summary.by_object["Orders"].yearly_backups == 2


def test_multi_part_full_backup_is_kept_whole() -> None:
    keys = [
        full_key("Orders", "20240101_000000", part=1),
        full_key("Orders", "20240101_000000", part=2),
        full_key("Orders", "20240101_000000", part=3),
        diff_key("Orders", "20240102_000000"),
    ]

    result = apply_retention_policy(
        keys, "bucket", policy(full_backups=1, differential_backups=1)
    )

    assert sorted(result.retained_keys) == sorted(keys)
    assert result.backups_to_delete == []
    summary = result.summary.by_object["Orders"]
    assert summary.total_backups == 2
    assert summary.retained_count == 4
    assert summary.delete_count == 0
    assert [backup.part for backup in summary.retained_backups] == [1, 2, 3, 1]


def test_yearly_claims_skip_the_year_of_the_newest_full() -> None:
    keys = [
        full_key("Orders", "20220301_000000"),
        full_key("Orders", "20230101_000000"),
        full_key("Orders", "20240101_000000"),
    ]

    result = apply_retention_policy(keys, "bucket", policy(full_backups=1, yearly_backups=2))

    assert result.retained_keys == [keys[0], keys[2]]
    assert result.summary.by_object["Orders"].yearly_backups == 1
    assert result.summary.by_object["Orders"].full_backups == 1


def test_yearly_and_monthly_claims_are_both_counted() -> None:
    keys = [
        full_key("Orders", "20230101_000000"),
        full_key("Orders", "20230215_000000"),
    ]

    retained, summary = evaluate_timeline(
        group_backups(parse_backups(keys, "bucket")[0])["Orders"],
        policy(yearly_backups=1, monthly_backups=2),
    )

    assert retained == frozenset({"Orders_20230101_000000", "Orders_20230215_000000"})
    assert summary.yearly_backups == 1
    assert summary.monthly_backups == 2
    assert summary.retained_count == 2


def test_monthly_keeps_first_backup_of_each_month() -> None:
    keys = daily_full_keys("Orders", datetime(2024, 1, 28), 10)

    result = apply_retention_policy(keys, "bucket", policy(monthly_backups=2))

    assert result.retained_keys == [
        full_key("Orders", "20240128_000000"),
        full_key("Orders", "20240201_000000"),
    ]


def test_weekly_keeps_newest_backup_of_recent_weeks() -> None:
    keys = daily_full_keys("Orders", datetime(2024, 1, 1), 21)

    result = apply_retention_policy(keys, "bucket", policy(weekly_backups=2))

    # 2024-01-21 is a Sunday closing ISO week 3, 2024-01-14 closes week 2.
    assert result.retained_keys == [
        full_key("Orders", "20240114_000000"),
        full_key("Orders", "20240121_000000"),
    ]
    assert result.summary.by_object["Orders"].weekly_backups == 2


def test_differential_window_keeps_newest_differentials() -> None:
    keys = [diff_key("Orders", f"202401{day:02d}_000000") for day in range(1, 11)]

    result = apply_retention_policy(keys, "bucket", policy(differential_backups=3, full_backups=2))

    assert result.retained_keys == keys[-3:]
    summary = result.summary.by_object["Orders"]
    assert summary.differential_backups == 3
    assert summary.full_backups == 0
    assert summary.delete_count == 7


def test_zero_caps_retain_nothing() -> None:
    keys = ORDERS_FULLS + [diff_key("Orders", "20240102_000000")]

    result = apply_retention_policy(keys, "bucket", policy())

    assert result.retained_keys == []
    assert sorted(result.delete_keys) == sorted(keys)


def test_evaluate_is_idempotent_and_order_independent() -> None:
    keys = daily_full_keys("Orders", datetime(2023, 11, 1), 90)
    keys += [diff_key("Orders", f"202401{day:02d}_120000") for day in range(1, 20)]
    groups = group_backups(parse_backups(keys, "bucket")[0])["Orders"]
    rules = RetentionPolicy()

    first, _ = evaluate_timeline(groups, rules)
    second, _ = evaluate_timeline(list(reversed(groups)), rules)

    assert first == second


def build_mixed_inventory() -> List[str]:
    keys: List[str] = []
    start = datetime(2022, 12, 20, 3, 0, 0)
    for offset in range(0, 500, 3):
        stamp = (start + timedelta(days=offset)).strftime("%Y%m%d_%H%M%S")
        keys.append(full_key("Orders", stamp, part=1))
        keys.append(full_key("Orders", stamp, part=2))
        keys.append(diff_key("Orders", (start + timedelta(days=offset + 1)).strftime("%Y%m%d_%H%M%S")))
        keys.append(full_key("Customers", stamp))
    keys.append("backups-full/README.txt")
    return keys


@pytest.mark.parametrize(
    "rules",
    [
        RetentionPolicy(),
        RetentionPolicy(full_backups=3, yearly_backups=2, monthly_backups=6, weekly_backups=8, differential_backups=2),
        RetentionPolicy(full_backups=0, yearly_backups=5, monthly_backups=0, weekly_backups=1, differential_backups=0),
    ],
)
def test_retention_invariants(rules: RetentionPolicy) -> None:
    keys = build_mixed_inventory()
    descriptors, skipped = parse_backups(keys, "bucket")

    result = apply_retention_policy(keys, "bucket", rules)

    retained = set(result.retained_keys)
    deleted = set(result.delete_keys)
    assert skipped == result.skipped_keys == ["backups-full/README.txt"]
    assert retained.isdisjoint(deleted)
    assert retained | deleted == {d.key for d in descriptors}

    for object_name, groups in group_backups(descriptors).items():
        for group in groups:
            kept = [key in retained for key in group.keys]
            assert all(kept) or not any(kept)

        fulls = sorted((g for g in groups if g.is_full), key=lambda g: g.timestamp)
        for group in fulls[len(fulls) - rules.full_backups :] if rules.full_backups else []:
            assert set(group.keys) <= retained

        summary = result.summary.by_object[object_name]
        assert summary.yearly_backups <= rules.yearly_backups
        assert summary.monthly_backups <= rules.monthly_backups
        assert summary.weekly_backups <= rules.weekly_backups
        assert summary.differential_backups <= rules.differential_backups
        assert summary.retained_count + summary.delete_count == sum(len(g.parts) for g in groups)


def test_summary_totals_add_up() -> None:
    result = apply_retention_policy(build_mixed_inventory(), "bucket", RetentionPolicy())
    summary = result.summary

    assert summary.total_backups == sum(s.total_backups for s in summary.by_object.values())
    assert summary.retained_count == len(result.retained_keys)
    assert summary.delete_count == len(result.backups_to_delete)


def test_aggregate_totals_ignores_failed_buckets() -> None:
    first = summarize_bucket(
        {"Orders": ObjectSummary(total_backups=3, retained_count=2, delete_count=4)}
    )
    second = BucketSummary(total_backups=5, retained_count=1, delete_count=1)

    total = aggregate_totals([first, None, second])

    assert (total.total_backups, total.retained_count, total.delete_count) == (8, 3, 5)


def test_descriptor_is_immutable() -> None:
    backup = parse_backup_key(full_key("Orders", "20240101_000000"), "bucket")
    assert isinstance(backup, BackupDescriptor)
    with pytest.raises(AttributeError):
        backup.key = "other"  # type: ignore[misc]
