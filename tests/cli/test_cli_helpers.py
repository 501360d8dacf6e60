"""Tests for CLI helper functions."""

from pathlib import Path

import pytest

from tests.conftest import plan_text


class TestResolveSettings:
    def test_defaults_without_config_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        from stratum.cli_helpers import resolve_settings

        monkeypatch.chdir(tmp_path)

        assert resolve_settings(None).plan_file == "stratum.plan"

    def test_default_file_picked_up(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        from stratum.cli_helpers import resolve_settings

        monkeypatch.chdir(tmp_path)
        (tmp_path / "stratum.yaml").write_text('plan_file: "db/flipr.plan"\n')

        assert resolve_settings(None).plan_file == "db/flipr.plan"

    def test_explicit_file_wins(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        from stratum.cli_helpers import resolve_settings

        monkeypatch.chdir(tmp_path)
        (tmp_path / "stratum.yaml").write_text('plan_file: "default.plan"\n')
        explicit = tmp_path / "other.yaml"
        explicit.write_text('plan_file: "other.plan"\n')

        assert resolve_settings(explicit).plan_file == "other.plan"


class TestAssignments:
    def test_parse(self) -> None:
        from stratum.cli_helpers import parse_assignments

        assert parse_assignments(["a=1", "b=x=y", "c="], "--set") == {"a": "1", "b": "x=y", "c": ""}
        assert parse_assignments(None, "--set") == {}

    @pytest.mark.parametrize("value", ["novalue", "=1", " =1"])
    def test_rejects_malformed(self, value: str) -> None:
        from stratum.cli_helpers import parse_assignments

        with pytest.raises(ValueError, match="--set-deploy expects key=value"):
            parse_assignments([value], "--set-deploy")

    def test_merge_later_layers_win(self) -> None:
        from stratum.cli_helpers import merge_variables

        assert merge_variables({"a": "1", "b": "1"}, {"b": "2"}, {"c": "3"}) == {"a": "1", "b": "2", "c": "3"}


class TestResolveCheckoutOptions:
    def test_falls_back_to_deploy_and_revert_sections(self) -> None:
        from stratum.cli_helpers import resolve_checkout_options
        from stratum.contracts.enums import DeployMode
        from stratum.core.config import StratumSettings

        settings = StratumSettings(
            deploy={"mode": "change", "verify": True},  # type: ignore[arg-type]
            revert={"no_prompt": True},  # type: ignore[arg-type]
        )

        options = resolve_checkout_options(settings, mode=None, verify=None, no_prompt=None)

        assert options.mode == DeployMode.CHANGE
        assert options.verify is True
        assert options.no_prompt is True

    def test_checkout_section_overrides(self) -> None:
        from stratum.cli_helpers import resolve_checkout_options
        from stratum.contracts.enums import DeployMode
        from stratum.core.config import StratumSettings

        settings = StratumSettings(
            deploy={"mode": "change", "verify": True},  # type: ignore[arg-type]
            checkout={"mode": "tag", "verify": False},  # type: ignore[arg-type]
        )

        options = resolve_checkout_options(settings, mode=None, verify=None, no_prompt=None)

        assert options.mode == DeployMode.TAG
        assert options.verify is False
        assert options.no_prompt is False

    def test_cli_options_win(self) -> None:
        from stratum.cli_helpers import resolve_checkout_options
        from stratum.contracts.enums import DeployMode
        from stratum.core.config import StratumSettings

        settings = StratumSettings(checkout={"mode": "tag"})  # type: ignore[arg-type]

        options = resolve_checkout_options(settings, mode=DeployMode.ALL, verify=True, no_prompt=True)

        assert options == type(options)(mode=DeployMode.ALL, verify=True, no_prompt=True)


class TestPlanLookup:
    def test_loads_relative_to_base_once(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        from stratum.cli_helpers import build_plan_lookup
        from stratum.core.config import StratumSettings
        from stratum.core.plan import Plan

        (tmp_path / "base.plan").write_text(plan_text("schema", project="base"))
        settings = StratumSettings(foreign_plans={"base": "base.plan"})
        reads: list[Path] = []
        original = Plan.from_file

        def counting(path: Path, **kwargs: str | None) -> Plan:
            reads.append(Path(path))
            return original(path, **kwargs)

        monkeypatch.setattr(Plan, "from_file", counting)
        lookup = build_plan_lookup(settings, base=tmp_path)

        assert lookup("base").project == "base"
        assert lookup("base") is lookup("base")
        assert reads == [tmp_path / "base.plan"]

    def test_unknown_project_raises_key_error(self, tmp_path: Path) -> None:
        from stratum.cli_helpers import build_plan_lookup
        from stratum.core.config import StratumSettings

        with pytest.raises(KeyError):
            build_plan_lookup(StratumSettings(), base=tmp_path)("nope")


def test_open_engine_closes_driver(tmp_path: Path) -> None:
    from stratum.cli_helpers import open_engine
    from stratum.core.config import StratumSettings
    from tests.conftest import make_plan

    settings = StratumSettings(
        target={"url": f"sqlite:///{tmp_path / 'target.db'}"},  # type: ignore[arg-type]
        user={"name": "Ann", "email": "ann@example.com"},  # type: ignore[arg-type]
    )

    with open_engine(settings, make_plan("users"), base=tmp_path) as engine:
        assert engine.top_dir == tmp_path
        assert engine.deployed_changes() == []
        db = engine.driver.db  # type: ignore[attr-defined]

    with pytest.raises(RuntimeError, match="Database not initialized"):
        _ = db.engine
