"""
Tests for catalog value sanitization.
"""

import pytest

from tweakguard.core.services import input_sanitizer as sanitize


class TestPackageValues:
    @pytest.mark.parametrize("value", ["Mozilla.Firefox", "7zip.7zip", "Notepad++.Notepad++", "vlc"])
    def test_valid_package_ids(self, value):
        assert sanitize.ensure_package_id(f"  {value} ", "app") == value

    @pytest.mark.parametrize("value", ["-evil", "a b", "x;rm", "a'b", "a" * 129])
    def test_invalid_package_ids(self, value):
        with pytest.raises(ValueError, match="invalid package identifier"):
            sanitize.ensure_package_id(value, "app")

    def test_missing_package_id(self):
        with pytest.raises(ValueError, match="app: package identifier is required"):
            sanitize.ensure_package_id("   ", "app")

    def test_query_allows_spaces_and_quotes(self):
        assert sanitize.ensure_package_query("Visual Studio Code", "app") == "Visual Studio Code"
        assert sanitize.ensure_package_query("Paint.NET 'Classic'", "app") == "Paint.NET 'Classic'"

    @pytest.mark.parametrize("value", ["a;b", "a|b", "a&b", "a`b", "$env:x", 'say "hi"', "a\nb"])
    def test_query_metacharacters(self, value):
        with pytest.raises(ValueError, match="blocked metacharacters"):
            sanitize.ensure_package_query(value, "app")

    def test_query_length(self):
        sanitize.ensure_package_query("x" * 128, "app")
        with pytest.raises(ValueError, match="longer than 128"):
            sanitize.ensure_package_query("x" * 129, "app")


class TestFeatureAndArguments:
    def test_feature_name(self):
        assert sanitize.ensure_feature_name("Microsoft-Hyper-V-All", "feature") == "Microsoft-Hyper-V-All"
        with pytest.raises(ValueError, match="invalid feature name"):
            sanitize.ensure_feature_name("Hyper V; Stop-Computer", "feature")
        with pytest.raises(ValueError, match="feature name is required"):
            sanitize.ensure_feature_name(None, "feature")

    def test_cli_arguments(self):
        assert sanitize.ensure_safe_cli_arguments(None, "app") == ""
        assert sanitize.ensure_safe_cli_arguments("/S /D=C:\\Tools", "app") == "/S /D=C:\\Tools"
        with pytest.raises(ValueError, match="'--%' is not allowed"):
            sanitize.ensure_safe_cli_arguments("--% /quiet", "app")
        with pytest.raises(ValueError, match="unsupported characters"):
            sanitize.ensure_safe_cli_arguments("/S; calc", "app")

    @pytest.mark.parametrize("mode,expected", [
        ("automatic", "Automatic"), (" MANUAL ", "Manual"), ("Disabled", "Disabled"),
    ])
    def test_startup_modes(self, mode, expected):
        assert sanitize.ensure_service_startup_mode(mode) == expected

    def test_bad_startup_mode(self):
        with pytest.raises(ValueError, match="Invalid service startup mode 'boot'"):
            sanitize.ensure_service_startup_mode("boot")


class TestLaunchScripts:
    def test_start_process_allowed(self):
        script = "Start-Process 'control.exe' -ArgumentList 'printers'"
        assert sanitize.ensure_safe_legacy_launch_script(f" {script} ", "panel") == script

    def test_other_commands_rejected(self):
        with pytest.raises(ValueError, match="only Start-Process"):
            sanitize.ensure_safe_legacy_launch_script("Remove-Item C:\\ -Recurse", "panel")

    def test_chaining_rejected(self):
        with pytest.raises(ValueError, match="blocked metacharacters"):
            sanitize.ensure_safe_legacy_launch_script("Start-Process 'ncpa.cpl'; Stop-Computer", "panel")

    def test_quoting(self):
        assert sanitize.escape_single_quotes("it's") == "it''s"
        assert sanitize.to_single_quoted_literal("O'Brien") == "'O''Brien'"
        assert sanitize.to_single_quoted_literal(None) == "''"
