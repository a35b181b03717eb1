"""Tests for medtrack.data.repository: substance read-modify-write operations."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from medtrack.core.errors import NotFoundError, StaleWriteError, ValidationError
from medtrack.data.profiles import TIMING_PROFILES
from medtrack.data.repository import SubstanceRepository, timing_summary
from medtrack.data.schemas import (
    DoseStatus,
    Substance,
    make_dose,
    make_override_log_entry,
    make_substance,
    make_substance_settings,
)
from medtrack.data.store import InMemoryStore

NOW = datetime(2026, 3, 2, 20, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_substance(
    substance_id: str = "s1",
    name: str = "Tramadol",
    track_supply: bool = False,
    current_supply: float | None = None,
    min_hours: float = 6,
) -> Substance:
    return make_substance(
        name=name,
        category="opioid",
        dosage=50,
        substance_id=substance_id,
        settings=make_substance_settings(
            default_dosage=50,
            min_time_between_doses=min_hours,
            use_recommended_timing=False,
            track_supply=track_supply,
            current_supply=current_supply,
        ),
    )


def _make_repo(*substances: Substance, journal: Path | None = None) -> SubstanceRepository:
    store = InMemoryStore({"drugs": list(substances)})
    return SubstanceRepository(store, journal_path=journal, clock=lambda: NOW)


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


class TestReads:
    def test_get_substance(self) -> None:
        repo = _make_repo(_make_substance())
        assert repo.get_substance("s1")["name"] == "Tramadol"

    def test_get_missing_raises(self) -> None:
        with pytest.raises(NotFoundError):
            _make_repo().get_substance("nope")

    def test_corrupt_collection_reads_as_empty(self) -> None:
        repo = SubstanceRepository(InMemoryStore({"drugs": {"not": "a list"}}))
        assert repo.list_substances() == []

    def test_search_is_case_insensitive_substring(self) -> None:
        repo = _make_repo(
            _make_substance("a", "Ibuprofen"),
            _make_substance("b", "Paracetamol"),
            _make_substance("c", "Ibuprofen Forte"),
        )
        assert [s["id"] for s in repo.search_substances("IBU")] == ["a", "c"]
        assert len(repo.search_substances("")) == 3


# ---------------------------------------------------------------------------
# Add / delete
# ---------------------------------------------------------------------------


class TestAddDelete:
    def test_add_substance(self) -> None:
        repo = _make_repo()
        repo.add_substance(_make_substance())
        assert [s["id"] for s in repo.list_substances()] == ["s1"]

    def test_add_duplicate_id_rejected(self) -> None:
        repo = _make_repo(_make_substance())
        with pytest.raises(ValidationError):
            repo.add_substance(_make_substance())

    def test_delete_drops_override_log(self) -> None:
        repo = _make_repo(_make_substance(), _make_substance("s2", "Codeine"))
        repo.store.set("s1_overrides", [{"reason": "x"}])
        repo.delete_substance("s1")
        assert [s["id"] for s in repo.list_substances()] == ["s2"]
        assert repo.store.get("s1_overrides") is None

    def test_delete_missing_raises(self) -> None:
        with pytest.raises(NotFoundError):
            _make_repo().delete_substance("nope")


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


class TestUpdateSettings:
    def test_merges_fields(self) -> None:
        repo = _make_repo(_make_substance())
        updated = repo.update_settings("s1", {"maxDailyDoses": 2, "minTimeBetweenDoses": 8})
        assert updated["settings"]["maxDailyDoses"] == 2
        assert updated["settings"]["minTimeBetweenDoses"] == 8
        assert repo.get_substance("s1")["settings"]["maxDailyDoses"] == 2

    def test_recommended_timing_derives_interval(self) -> None:
        repo = _make_repo(_make_substance())
        updated = repo.update_settings("s1", {"useRecommendedTiming": True, "minTimeBetweenDoses": 1})
        expected = TIMING_PROFILES["tramadol"].total_minutes / 60
        assert updated["settings"]["minTimeBetweenDoses"] == pytest.approx(expected)

    def test_disabling_supply_clears_it(self) -> None:
        repo = _make_repo(_make_substance(track_supply=True, current_supply=20))
        updated = repo.update_settings("s1", {"trackSupply": False})
        assert updated["settings"]["currentSupply"] is None

    def test_enabling_supply_without_amount_starts_at_zero(self) -> None:
        repo = _make_repo(_make_substance())
        updated = repo.update_settings("s1", {"trackSupply": True})
        assert updated["settings"]["currentSupply"] == 0

    def test_unknown_field_rejected(self) -> None:
        repo = _make_repo(_make_substance())
        with pytest.raises(ValidationError, match="bogus"):
            repo.update_settings("s1", {"bogus": 1})

    @pytest.mark.parametrize("supply", [-5, float("nan"), "ten"])
    def test_invalid_supply_rejected(self, supply: object) -> None:
        repo = _make_repo(_make_substance(track_supply=True, current_supply=10))
        with pytest.raises(ValidationError, match="currentSupply"):
            repo.update_settings("s1", {"currentSupply": supply})
        assert repo.get_substance("s1")["settings"]["currentSupply"] == 10

    @pytest.mark.parametrize("max_daily", [0, -1, 2.5, True])
    def test_invalid_daily_limit_rejected(self, max_daily: object) -> None:
        repo = _make_repo(_make_substance())
        with pytest.raises(ValidationError, match="maxDailyDoses"):
            repo.update_settings("s1", {"maxDailyDoses": max_daily})
        assert repo.get_substance("s1")["settings"]["maxDailyDoses"] == 4


# ---------------------------------------------------------------------------
# Commit
# ---------------------------------------------------------------------------


class TestCommitDose:
    def test_prepends_dose(self) -> None:
        old = make_dose(1, 50, NOW - timedelta(hours=8))
        substance = _make_substance()
        substance["doses"] = [old]
        repo = _make_repo(substance)
        new = make_dose(2, 50, NOW)
        repo.commit_dose("s1", new)
        assert [d["id"] for d in repo.get_substance("s1")["doses"]] == [2, 1]

    def test_decrements_tracked_supply(self) -> None:
        repo = _make_repo(_make_substance(track_supply=True, current_supply=5))
        updated = repo.commit_dose("s1", make_dose(1, 7, NOW))
        assert updated["settings"]["currentSupply"] == 0

    def test_untracked_supply_untouched(self) -> None:
        repo = _make_repo(_make_substance())
        updated = repo.commit_dose("s1", make_dose(1, 7, NOW))
        assert updated["settings"]["currentSupply"] is None

    def test_override_entry_written_with_dose(self) -> None:
        substance = _make_substance()
        repo = _make_repo(substance)
        entry = make_override_log_entry(substance, "pain flare", 2.0, 1, NOW)
        dose = make_dose(1, 50, NOW, status=DoseStatus.OVERRIDE, override_reason="pain flare")
        repo.commit_dose("s1", dose, override_entry=entry)
        assert repo.override_log("s1") == [entry]
        assert repo.get_substance("s1")["doses"][0]["overrideReason"] == "pain flare"

    def test_missing_substance_writes_nothing(self) -> None:
        repo = _make_repo(_make_substance())
        version = repo.store.version("drugs")
        with pytest.raises(NotFoundError):
            repo.commit_dose("ghost", make_dose(1, 50, NOW))
        assert repo.store.version("drugs") == version

    def test_stale_expected_version_rejected(self) -> None:
        repo = _make_repo(_make_substance())
        _, version = repo.snapshot()
        repo.update_settings("s1", {"maxDailyDoses": 3})
        with pytest.raises(StaleWriteError):
            repo.commit_dose("s1", make_dose(1, 50, NOW), expected_version=version)
        assert repo.get_substance("s1")["doses"] == []

    def test_journal_written(self, tmp_path: Path) -> None:
        journal = tmp_path / "audit" / "doses.jsonl"
        repo = _make_repo(_make_substance(), journal=journal)
        repo.commit_dose("s1", make_dose(7, 50, NOW))
        entry = json.loads(journal.read_text().strip())
        assert entry["action"] == "commit_dose"
        assert entry["dose_id"] == 7
        assert entry["substance_id"] == "s1"


# ---------------------------------------------------------------------------
# Quick log with status classification
# ---------------------------------------------------------------------------


class TestRecordDose:
    @pytest.mark.parametrize(
        "hours_ago,expected",
        [(2, DoseStatus.EARLY), (4, DoseStatus.WARNING), (7, DoseStatus.NORMAL)],
    )
    def test_status_from_half_interval_rule(self, hours_ago: float, expected: DoseStatus) -> None:
        substance = _make_substance(min_hours=6)
        substance["doses"] = [make_dose(1, 50, NOW - timedelta(hours=hours_ago))]
        repo = _make_repo(substance)
        dose = repo.record_dose("s1", 50)
        assert dose["status"] == expected
        assert repo.get_substance("s1")["doses"][0] == dose

    def test_first_dose_is_normal(self) -> None:
        repo = _make_repo(_make_substance())
        assert repo.record_dose("s1", 25)["status"] == DoseStatus.NORMAL

    def test_non_positive_amount_rejected(self) -> None:
        repo = _make_repo(_make_substance())
        with pytest.raises(ValidationError):
            repo.record_dose("s1", 0)

    @pytest.mark.parametrize("amount", [float("nan"), float("inf"), "abc"])
    def test_non_finite_amount_rejected(self, amount: object) -> None:
        repo = _make_repo(_make_substance(track_supply=True, current_supply=10))
        with pytest.raises(ValidationError):
            repo.record_dose("s1", amount)
        after = repo.get_substance("s1")
        assert after["doses"] == []
        assert after["settings"]["currentSupply"] == 10

    def test_backdated_dose_kept_in_time_order(self) -> None:
        substance = _make_substance()
        substance["doses"] = [make_dose(1, 50, NOW - timedelta(hours=1))]
        repo = _make_repo(substance)
        dose = repo.record_dose("s1", 50, dose_time=NOW - timedelta(hours=3))
        assert [d["id"] for d in repo.get_substance("s1")["doses"]] == [1, dose["id"]]


# ---------------------------------------------------------------------------
# Reset timer
# ---------------------------------------------------------------------------


class TestResetTimer:
    def test_removes_only_head_dose(self) -> None:
        substance = _make_substance(track_supply=True, current_supply=10)
        substance["doses"] = [make_dose(3, 50, NOW), make_dose(2, 50, NOW - timedelta(hours=5))]
        repo = _make_repo(substance)
        removed = repo.reset_timer("s1")
        assert removed is not None and removed["id"] == 3
        assert [d["id"] for d in repo.get_substance("s1")["doses"]] == [2]

    def test_supply_and_override_log_not_restored(self) -> None:
        substance = _make_substance(track_supply=True, current_supply=10)
        repo = _make_repo(substance)
        entry = make_override_log_entry(substance, "needed", 1.0, 1, NOW)
        dose = make_dose(1, 4, NOW, status=DoseStatus.OVERRIDE, override_reason="needed")
        repo.commit_dose("s1", dose, override_entry=entry)
        repo.reset_timer("s1")
        after = repo.get_substance("s1")
        assert after["doses"] == []
        assert after["settings"]["currentSupply"] == 6
        assert repo.override_log("s1") == [entry]

    def test_empty_log_returns_none(self) -> None:
        assert _make_repo(_make_substance()).reset_timer("s1") is None


def test_timing_summary() -> None:
    summary = timing_summary(_make_substance(name="Caffeine"))
    assert summary["profile"] == "caffeine"
    assert summary["recommended_hours"] == pytest.approx(TIMING_PROFILES["caffeine"].total_hours)
