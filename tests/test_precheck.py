"""
Tests for the environment precheck and the compatibility gate.
"""

import pytest

from tweakguard.core.models.operation import OperationDefinition, ScriptStep
from tweakguard.core.services.precheck import (
    MIN_FREE_BYTES,
    EnvironmentProbe,
    filter_compatible,
    is_compatible,
    parse_version,
    run_precheck,
    token_matches,
)

WIN10 = (10, 0, 19045)
WIN11 = (10, 0, 22631)


def _probe(**overrides) -> EnvironmentProbe:
    fields = dict(
        is_admin=lambda: True,
        is_windows=lambda: True,
        os_version=lambda: WIN11,
        free_bytes=lambda: MIN_FREE_BYTES * 4,
        is_online=lambda: True,
    )
    fields.update(overrides)
    return EnvironmentProbe(**fields)


def _op(op_id="tweak.a", network=False, compatibility=()):
    return OperationDefinition(
        id=op_id,
        title=op_id,
        compatibility=compatibility,
        run_scripts=(ScriptStep(name="install", script="winget install x", requires_network=network),),
        undo_scripts=(ScriptStep(name="uninstall", script="winget uninstall x"),),
    )


class TestRunPrecheck:
    def test_all_good(self):
        result = run_precheck([_op()], probe=_probe())
        assert result.ok
        assert result.message == "Precheck passed."

    def test_admin_checked_first(self):
        result = run_precheck([_op()], probe=_probe(is_admin=lambda: False, is_windows=lambda: False))
        assert not result.ok
        assert result.message == "Administrator privileges are required."

    def test_windows_required(self):
        result = run_precheck([_op()], probe=_probe(is_windows=lambda: False))
        assert result.message == "Windows is required for operation execution."

    def test_unknown_version(self):
        result = run_precheck([_op()], probe=_probe(os_version=lambda: None))
        assert not result.ok
        assert "unable to determine" in result.message

    def test_too_old(self):
        result = run_precheck([_op()], probe=_probe(os_version=lambda: (10, 0, 18363)))
        assert "Minimum supported version is 10.0.19041" in result.message

    def test_too_new(self):
        result = run_precheck([_op()], probe=_probe(os_version=lambda: (10, 0, 30000)))
        assert "Maximum validated version is 10.0.29999" in result.message

    @pytest.mark.parametrize("version", [(10, 0, 19041), (10, 0, 29999)])
    def test_bounds_inclusive(self, version):
        assert run_precheck([_op()], probe=_probe(os_version=lambda: version)).ok

    def test_low_disk(self):
        result = run_precheck([_op()], probe=_probe(free_bytes=lambda: MIN_FREE_BYTES - 1))
        assert result.message == "Insufficient disk space (<500MB free). Operation blocked."

    def test_disk_probe_error_counts_as_full(self):
        def _broken():
            raise OSError("no drive")

        assert not run_precheck([_op()], probe=_probe(free_bytes=_broken)).ok

    def test_offline_with_network_step(self):
        result = run_precheck([_op(network=True)], probe=_probe(is_online=lambda: False))
        assert result.message.startswith("Offline detected.")

    def test_offline_ignored_when_direction_needs_no_network(self):
        probe = _probe(is_online=lambda: False)
        assert run_precheck([_op()], probe=probe).ok
        assert run_precheck([_op(network=True)], undo=True, probe=probe).ok


class TestCompatibility:
    def test_parse_version(self):
        assert parse_version("10.0.22631") == (10, 0, 22631)
        assert parse_version("10") == (10, 0, 0)
        assert parse_version("ten") is None

    @pytest.mark.parametrize("token,version,expected", [
        ("win10", WIN10, True),
        ("win10", WIN11, False),
        ("WIN11", WIN11, True),
        ("win11", WIN10, False),
        (">=10.0.22000", WIN11, True),
        (">=10.0.22000", WIN10, False),
        ("<=10.0.19045", WIN10, True),
        ("<=10.0.19045", WIN11, False),
        ("macos", WIN11, False),
        (">=garbage", WIN11, False),
    ])
    def test_token_matches(self, token, version, expected):
        assert token_matches(token, version) is expected

    def test_no_tokens_always_compatible(self):
        assert is_compatible(_op(), None)
        assert is_compatible(_op(compatibility=("  ",)), WIN10)

    def test_unknown_version_fails_tokens(self):
        assert not is_compatible(_op(compatibility=("win11",)), None)

    def test_any_token_may_match(self):
        assert is_compatible(_op(compatibility=("win10", "win11")), WIN11)

    def test_filter_preserves_order(self):
        ops = [_op("a"), _op("b", compatibility=("win10",)), _op("c", compatibility=("win11",))]
        compatible, incompatible = filter_compatible(ops, WIN11)
        assert [o.id for o in compatible] == ["a", "c"]
        assert [o.id for o in incompatible] == ["b"]
