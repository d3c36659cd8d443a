"""Tests for the diff rules engine."""

import pytest

from convergence.diff import (
    ComparisonType,
    FieldRule,
    compare,
    equal_maintenance_window,
    equal_nil_safe,
    equal_time_of_day,
    equal_unordered,
    is_empty,
    lookup_path,
)
from convergence.models import K8sClusterSpec, MaintenanceWindow, ProviderState

RULES = (
    FieldRule("name", "name"),
    FieldRule("k8s_version", "k8sVersion", ComparisonType.OPTIONAL),
    FieldRule("api_subnet_allow_list", "apiSubnetAllowList", ComparisonType.UNORDERED),
    FieldRule("maintenance_window", "maintenanceWindow", ComparisonType.MAINTENANCE_WINDOW),
)


class TestIsEmpty:
    """Tests for is_empty()."""

    @pytest.mark.parametrize("value", [None, "", 0, 0.0, False, [], {}, (), MaintenanceWindow()])
    def test_empty(self, value: object) -> None:
        assert is_empty(value)

    @pytest.mark.parametrize("value", ["x", 1, True, [0], {"a": 1}, MaintenanceWindow(time="1")])
    def test_not_empty(self, value: object) -> None:
        assert not is_empty(value)


class TestNilSafe:
    """Tests for nil-safe comparison."""

    def test_absent_observed_equals_empty_desired(self) -> None:
        """Test symmetry on emptiness."""
        assert equal_nil_safe("", None)
        assert equal_nil_safe([], None)

    def test_absent_observed_differs_from_set_desired(self) -> None:
        assert not equal_nil_safe("x", None)

    def test_present_values(self) -> None:
        assert equal_nil_safe("x", "x")
        assert not equal_nil_safe("x", "y")


class TestTimeOfDay:
    """Tests for time-of-day comparison."""

    def test_missing_z_means_utc(self) -> None:
        assert equal_time_of_day("10:00:00", "10:00:00Z")
        assert equal_time_of_day("10:00:00Z", "10:00:00")

    def test_different_times(self) -> None:
        assert not equal_time_of_day("10:00:00", "11:00:00Z")

    def test_unparseable(self) -> None:
        assert not equal_time_of_day("ten o'clock", "10:00:00Z")

    def test_both_empty(self) -> None:
        assert equal_time_of_day("", None)
        assert not equal_time_of_day("10:00:00", None)


class TestMaintenanceWindow:
    """Tests for maintenance window comparison."""

    def test_absent_observed_with_empty_desired(self) -> None:
        assert equal_maintenance_window(MaintenanceWindow(), None)

    def test_absent_observed_with_set_desired(self) -> None:
        assert not equal_maintenance_window(MaintenanceWindow(time="10:00:00"), None)

    def test_matching_window(self) -> None:
        desired = MaintenanceWindow(time="10:00:00", day_of_the_week="Monday")
        observed = {"time": "10:00:00Z", "dayOfTheWeek": "Monday"}

        assert equal_maintenance_window(desired, observed)

    def test_different_day(self) -> None:
        desired = MaintenanceWindow(time="10:00:00", day_of_the_week="Monday")
        observed = {"time": "10:00:00Z", "dayOfTheWeek": "Sunday"}

        assert not equal_maintenance_window(desired, observed)


class TestUnordered:
    """Tests for set comparison."""

    def test_order_ignored(self) -> None:
        assert equal_unordered(["10.0.0.0/8", "192.168.0.0/16"], ["192.168.0.0/16", "10.0.0.0/8"])

    def test_mappings(self) -> None:
        assert equal_unordered([{"name": "a"}, {"name": "b"}], [{"name": "b"}, {"name": "a"}])

    def test_absent_observed(self) -> None:
        assert equal_unordered([], None)
        assert not equal_unordered(["a"], None)


class TestFieldRule:
    """Tests for individual comparison types."""

    def test_if_observed_skips_absent(self) -> None:
        rule = FieldRule("cores", "cores", ComparisonType.IF_OBSERVED)

        assert rule.equal(4, None)
        assert not rule.equal(4, 2)

    def test_optional_skips_unset_desired(self) -> None:
        rule = FieldRule("k8s_version", "k8sVersion", ComparisonType.OPTIONAL)

        assert rule.equal("", "1.28.0")
        assert not rule.equal("1.29.0", "1.28.0")

    def test_exact(self) -> None:
        rule = FieldRule("name", "name", ComparisonType.EXACT)

        assert not rule.equal("", None)

    def test_case_insensitive(self) -> None:
        rule = FieldRule("edition", "edition", ComparisonType.CASE_INSENSITIVE)

        assert rule.equal("Playground", "PLAYGROUND")


class TestCompare:
    """Tests for compare()."""

    def test_both_absent(self) -> None:
        assert compare(None, None, ProviderState.AVAILABLE, RULES).up_to_date

    def test_one_absent(self) -> None:
        spec = K8sClusterSpec(name="c")

        assert not compare(spec, None, ProviderState.AVAILABLE, RULES).up_to_date
        assert not compare(None, {"name": "c"}, ProviderState.AVAILABLE, RULES).up_to_date

    def test_transitional_is_up_to_date(self) -> None:
        """Test resources in transition are vacuously up to date."""
        spec = K8sClusterSpec(name="desired")
        observed = {"name": "something-else"}

        for state in (ProviderState.BUSY, ProviderState.DEPLOYING, ProviderState.UPDATING):
            assert compare(spec, observed, state, RULES).up_to_date

    def test_up_to_date(self) -> None:
        spec = K8sClusterSpec(name="c", apiSubnetAllowList=["a", "b"])
        observed = {"name": "c", "k8sVersion": "1.28.0", "apiSubnetAllowList": ["b", "a"]}

        result = compare(spec, observed, ProviderState.ACTIVE, RULES)

        assert result.up_to_date
        assert bool(result)

    def test_first_mismatch_reported(self) -> None:
        spec = K8sClusterSpec(name="c", k8sVersion="1.29.0")
        observed = {"name": "c", "k8sVersion": "1.28.0"}

        result = compare(spec, observed, ProviderState.ACTIVE, RULES)

        assert not result.up_to_date
        assert result.diff.startswith("k8s_version")


class TestLookupPath:
    """Tests for dotted path lookup."""

    def test_nested(self) -> None:
        assert lookup_path({"bootVolume": {"id": "v"}}, "bootVolume.id") == "v"

    def test_missing(self) -> None:
        assert lookup_path({"bootVolume": None}, "bootVolume.id") is None
        assert lookup_path(None, "name") is None
