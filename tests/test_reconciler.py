"""Tests for runtime identity matching."""

from __future__ import annotations

import pytest

from asa_ssh_fleet.reconciler import (
    DEFAULT_RULES,
    best_match,
    pick_rows,
    reconcile,
    strip_prefix,
    strip_suffixes,
)


class TestPrecedence:
    def test_exact_outranks_substring(self):
        match = best_match("center", ["asa_center-backup", "asa_center"])
        assert match.candidate == "asa_center"
        assert match.rule == "exact"

    def test_exact_outranks_substring_listed_first(self):
        assert best_match("center", ["asa_center", "asa_center-backup"]).candidate == "asa_center"

    def test_case_insensitive(self):
        assert best_match("TheIsland", ["ASA_theisland"]).candidate == "ASA_theisland"

    def test_prefix_on_logical_name_is_ignored(self):
        assert best_match("asa_Ragnarok", ["asa_Ragnarok"]).rule == "exact"

    def test_substring(self):
        match = best_match("Island", ["asa_TheIsland"])
        assert match.candidate == "asa_TheIsland"
        assert match.rule == "substring"

    def test_suffix_stripping(self):
        match = best_match("aberration_wp", ["asa_aberration-server"])
        assert match.candidate == "asa_aberration-server"
        assert match.rule == "exact_without_suffix"

    def test_tie_goes_to_earliest_candidate(self):
        match = best_match("scorched", ["asa_scorched_a", "asa_scorched_b"])
        assert match.candidate == "asa_scorched_a"

    def test_no_match(self):
        assert best_match("extinction", ["asa_center", "asa_island"]) is None

    def test_empty_inputs(self):
        assert best_match("", ["asa_center"]) is None
        assert best_match("center", []) is None
        assert best_match("center", ["asa_"]) is None

    def test_rule_order_is_explicit(self):
        assert [r.name for r in DEFAULT_RULES] == [
            "exact",
            "substring",
            "exact_without_suffix",
            "substring_without_suffix",
        ]

    @pytest.mark.parametrize("attempt", range(5))
    def test_deterministic(self, attempt):
        candidates = ["asa_valguero_se", "asa_valguero", "asa_val"]
        assert best_match("valguero", candidates).candidate == "asa_valguero"

    def test_custom_suffixes(self):
        assert best_match("fjordur_eu", ["asa_fjordur"], suffixes=["_eu"]).candidate == "asa_fjordur"


class TestHelpers:
    def test_strip_prefix(self):
        assert strip_prefix("ASA_center", "asa_") == "center"
        assert strip_prefix("center", "asa_") == "center"

    def test_strip_suffixes_repeats(self):
        assert strip_suffixes("island_wp-server", ["-server", "_wp"]) == "island"

    def test_strip_suffixes_never_empties(self):
        assert strip_suffixes("_server", ["_server"]) == "_server"


class TestReconcile:
    def test_one_identity_per_instance(self):
        result = reconcile(["center", "island", "extinction"], ["asa_island", "asa_center"])
        assert result == {"center": "asa_center", "island": "asa_island", "extinction": None}

    def test_pick_rows(self):
        rows = {"asa_center": 1, "asa_island": 2}
        assert pick_rows(["center", "ragnarok"], rows) == {"center": 1}
