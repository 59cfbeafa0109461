"""
Tests for allow-list reconciliation.
"""
import logging

import pytest

from danted_allowlist import AllowListWouldBeEmpty, NoAllowListEntries, reconcile


def test_seed_empty_list():
    assert reconcile((), ["203.0.113.5/32"], []) == ("203.0.113.5/32",)


def test_removing_last_entry_fails():
    with pytest.raises(AllowListWouldBeEmpty):
        reconcile(("10.0.0.0/24",), [], ["10.0.0.0/24"])


def test_adding_present_entry_is_absorbed():
    assert reconcile(("10.0.0.0/24",), ["10.0.0.0/24"], []) == ("10.0.0.0/24",)


def test_removing_absent_entry_warns(caplog):
    caplog.set_level(logging.WARNING, logger="danted-allowlist")
    assert reconcile(("10.0.0.1/32",), [], ["192.0.2.1/32"]) == ("10.0.0.1/32",)
    assert "192.0.2.1/32 not present" in caplog.text


def test_nothing_to_seed_from():
    with pytest.raises(NoAllowListEntries):
        reconcile((), [], [])


def test_nothing_to_seed_from_even_with_removals():
    with pytest.raises(NoAllowListEntries):
        reconcile((), [], ["10.0.0.1/32"])


def test_empty_request_is_identity():
    current = ("10.0.0.3/32", "10.0.0.1/32", "10.0.0.2/32")
    assert reconcile(current, [], []) == current
    assert reconcile(reconcile(current, [], []), [], []) == current


def test_additions_appended_in_order():
    assert reconcile(("10.0.0.1/32",), ["10.0.0.9/32", "10.0.0.1/32", "10.0.0.5/32", "10.0.0.9/32"], []) == (
        "10.0.0.1/32", "10.0.0.9/32", "10.0.0.5/32",
    )


def test_existing_entry_not_reordered_by_re_add():
    assert reconcile(("10.0.0.1/32", "10.0.0.2/32"), ["10.0.0.1/32"], []) == ("10.0.0.1/32", "10.0.0.2/32")


def test_adds_applied_before_removes():
    assert reconcile(("10.0.0.1/32",), ["10.0.0.2/32"], ["10.0.0.1/32"]) == ("10.0.0.2/32",)


def test_add_and_remove_same_entry_fails_when_nothing_else_remains():
    with pytest.raises(AllowListWouldBeEmpty):
        reconcile((), ["10.0.0.2/32"], ["10.0.0.2/32"])


def test_no_subnet_overlap_merging():
    assert reconcile(("10.0.0.0/8",), ["10.1.0.0/16"], []) == ("10.0.0.0/8", "10.1.0.0/16")


def test_input_not_mutated():
    current = ["10.0.0.1/32", "10.0.0.2/32"]
    reconcile(current, ["10.0.0.3/32"], ["10.0.0.1/32"])
    assert current == ["10.0.0.1/32", "10.0.0.2/32"]


def test_duplicate_removal_warns_second_time(caplog):
    caplog.set_level(logging.WARNING, logger="danted-allowlist")
    assert reconcile(("10.0.0.1/32", "10.0.0.2/32"), [], ["10.0.0.2/32", "10.0.0.2/32"]) == ("10.0.0.1/32",)
    assert caplog.text.count("not present") == 1
