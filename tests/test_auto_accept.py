"""Tests for the merchant auto-accept map."""

import json
from datetime import UTC, datetime

import pytest

from reconciler.errors import NotFoundError, ValidationError
from reconciler.schemas.auto_accept import AutoAcceptMapDocument
from reconciler.services.auto_accept import AutoAcceptMap, parse_document


def _map(mappings: dict[str, str], **document) -> AutoAcceptMap:
    auto_accept_map = AutoAcceptMap()
    auto_accept_map.import_document(AutoAcceptMapDocument(mappings=mappings, **document))
    return auto_accept_map


def test_contains_lookup_is_case_insensitive() -> None:
    auto_accept_map = _map({"WOOLWORTHS": "Groceries"})
    entry = auto_accept_map.lookup("woolworths   metro 1234 sydney")
    assert entry is not None
    assert entry.subcategory == "Groceries"
    assert auto_accept_map.lookup("COLES 123") is None
    assert auto_accept_map.lookup(None) is None


def test_longest_keyword_wins() -> None:
    auto_accept_map = _map({"UBER": "Transport", "UBER EATS": "Takeaway"})
    assert auto_accept_map.lookup("UBER EATS SYDNEY").subcategory == "Takeaway"
    assert auto_accept_map.lookup("UBER TRIP").subcategory == "Transport"


def test_exact_and_starts_with_modes() -> None:
    exact = _map({"NETFLIX.COM": "Streaming"}, match_mode="exact")
    assert exact.lookup("netflix.com") is not None
    assert exact.lookup("NETFLIX.COM MELBOURNE") is None

    prefix = _map({"SHELL": "Fuel"}, matchMode="STARTS_WITH")
    assert prefix.lookup("SHELL COLES EXPRESS") is not None
    assert prefix.lookup("BP NEAR SHELL COVE") is None


def test_case_sensitive_map() -> None:
    auto_accept_map = _map({"ALDI": "Groceries"}, case_sensitive=True)
    assert auto_accept_map.lookup("ALDI STORES") is not None
    assert auto_accept_map.lookup("aldi stores") is None


def test_mutations_are_copy_on_write() -> None:
    auto_accept_map = _map({"COLES": "Groceries"})
    before = auto_accept_map.snapshot

    auto_accept_map.add_mapping("ALDI", "Groceries")
    auto_accept_map.update_mapping("coles", "Supermarket")

    assert set(before.entries) == {"COLES"}
    assert before.entries["COLES"].subcategory == "Groceries"
    assert auto_accept_map.lookup("COLES 99").subcategory == "Supermarket"
    assert auto_accept_map.lookup("ALDI 12") is not None


def test_mapping_errors() -> None:
    auto_accept_map = _map({"COLES": "Groceries"})
    with pytest.raises(ValidationError):
        auto_accept_map.add_mapping("coles", "Groceries")
    with pytest.raises(ValidationError):
        auto_accept_map.add_mapping("  ", "Groceries")
    with pytest.raises(NotFoundError):
        auto_accept_map.update_mapping("ALDI", "Groceries")
    with pytest.raises(NotFoundError):
        auto_accept_map.remove_mapping("ALDI")

    auto_accept_map.remove_mapping("Coles")
    assert auto_accept_map.lookup("COLES 1") is None


def test_record_match_and_statistics() -> None:
    auto_accept_map = _map({"NETFLIX": "Streaming", "SPOTIFY": "Streaming", "SHELL": "Fuel"})
    when = datetime(2024, 1, 5, tzinfo=UTC)
    auto_accept_map.record_match("NETFLIX", when)
    auto_accept_map.record_match("netflix", when)
    auto_accept_map.record_match("SHELL", when)

    stats = auto_accept_map.statistics(top=2)

    assert stats.total_mappings == 3
    assert stats.total_auto_accepted == 3
    assert [(u.merchant, u.count) for u in stats.most_used] == [("NETFLIX", 2), ("SHELL", 1)]
    assert stats.least_used[0].merchant == "SPOTIFY"
    assert auto_accept_map.snapshot.entries["NETFLIX"].last_matched == when


def test_save_and_reload_round_trip_keeps_statistics(tmp_path) -> None:
    path = tmp_path / "auto_accept_map.json"
    auto_accept_map = AutoAcceptMap(path=path)
    auto_accept_map.add_mapping("WOOLWORTHS", "Groceries")
    auto_accept_map.record_match("WOOLWORTHS")
    auto_accept_map.save()

    raw = json.loads(path.read_text())
    assert raw["mappings"] == {"WOOLWORTHS": "Groceries"}
    assert raw["matchMode"] == "CONTAINS"
    assert raw["statistics"]["WOOLWORTHS"]["matchCount"] == 1

    reloaded = AutoAcceptMap(path=path)
    reloaded.reload()
    assert reloaded.snapshot.entries["WOOLWORTHS"].match_count == 1


def test_reload_missing_file_yields_empty_map(tmp_path) -> None:
    auto_accept_map = _map({"COLES": "Groceries"})
    auto_accept_map.path = tmp_path / "missing.json"
    auto_accept_map.reload()
    assert auto_accept_map.snapshot.entries == {}


def test_save_without_path_fails() -> None:
    with pytest.raises(ValidationError):
        AutoAcceptMap().save()


def test_parse_document() -> None:
    document = parse_document(
        '{"version": "2.0", "caseSensitive": false, "matchMode": "contains", '
        '"mappings": {"NETFLIX": "Streaming", " ": "Nothing", "EMPTY": ""}}'
    )
    assert document.version == "2.0"
    assert document.match_mode == "CONTAINS"
    assert document.mappings == {"NETFLIX": "Streaming"}

    with pytest.raises(ValidationError):
        parse_document('{"matchMode": "FUZZY"}')
