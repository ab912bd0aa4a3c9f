"""Tests for the command-line entry point."""

from __future__ import annotations

import io
import json
from pathlib import Path

import pytest

from loremaster import app
from loremaster.ai.client import TransportError
from loremaster.services.settings import Settings, SettingsStore, redact_secret
from tests.helpers import FakeModelClient, anthropic_stream, tool_use

SCHEMA = {"tables": [{"name": "Items", "columns": [{"name": "id", "type": "int", "primary_key": True}]}]}


@pytest.fixture(autouse=True)
def _quiet_logging(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(app, "configure_logging", lambda *args, **kwargs: None)


@pytest.fixture
def scripted_client(monkeypatch: pytest.MonkeyPatch):
    """Route ``AIClient`` construction to a scripted client."""

    holder: dict[str, FakeModelClient] = {}

    def install(*cycles) -> FakeModelClient:
        client = FakeModelClient(cycles)
        holder["client"] = client
        monkeypatch.setattr(app, "AIClient", lambda client_settings: client)
        return client

    return install


# =============================================================================
# Overrides and settings
# =============================================================================


class TestOverrides:
    def test_mapping_overrides_are_merged(self) -> None:
        overrides = app._coerce_cli_overrides(
            ["integrations.tracker=http://tracker", "integrations.resources=http://assets", "max_retries=2"]
        )

        assert overrides == {
            "integrations": {"tracker": "http://tracker", "resources": "http://assets"},
            "max_retries": 2,
        }

    def test_invalid_override(self) -> None:
        with pytest.raises(ValueError, match="expected KEY=VALUE"):
            app._coerce_cli_overrides(["max_retries"])

    def test_load_settings_falls_back_to_defaults(self, tmp_path: Path) -> None:
        # A directory cannot be read as a settings file.
        settings = app.load_settings(tmp_path)

        assert settings == Settings()

    def test_load_settings_applies_overrides(self, settings_path: Path) -> None:
        SettingsStore(settings_path).save(Settings(model="stored-model", api_key="sk-stored"))

        settings = app.load_settings(settings_path, overrides={"max_retries": 1})

        assert settings.model == "stored-model"
        assert settings.api_key == "sk-stored"
        assert settings.max_retries == 1


class TestDumpSettings:
    def test_dump_redacts_the_api_key(self, settings_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("LOREMASTER_MODEL", "env-model")
        store = SettingsStore(settings_path)
        stream = io.StringIO()

        app._dump_settings(Settings(api_key="sk-secret-value"), store, overrides={"api_key": "x"}, stream=stream)

        output = json.loads(stream.getvalue())
        assert output["settings"]["api_key"] == redact_secret("sk-secret-value")
        assert output["meta"] == {
            "path": str(settings_path),
            "secret_backend": "fernet",
            "cli_overrides": ["api_key"],
            "environment_variables": ["LOREMASTER_LOG_DIR", "LOREMASTER_MODEL"],
        }

    def test_main_dump_settings(self, settings_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        app.main(
            [
                "--settings-path",
                str(settings_path),
                "--set",
                "api_key=sk-secret-value",
                "--set",
                "integrations.tracker=http://tracker",
                "--dump-settings",
            ]
        )

        output = json.loads(capsys.readouterr().out)
        assert output["settings"]["api_key"].startswith("sk*")
        assert output["settings"]["integrations"] == {"tracker": "http://tracker"}
        assert output["meta"]["cli_overrides"] == ["api_key", "integrations"]
        assert not settings_path.exists()

    def test_settings_path_from_environment(
        self, settings_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        SettingsStore(settings_path).save(Settings(model="from-file"))
        monkeypatch.setenv("LOREMASTER_SETTINGS_PATH", str(settings_path))

        app.main(["--dump-settings"])

        output = json.loads(capsys.readouterr().out)
        assert output["settings"]["model"] == "from-file"
        assert output["meta"]["path"] == str(settings_path)


class TestMainErrors:
    def test_invalid_set_exits_with_usage_error(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as excinfo:
            app.main(["--set", "bogus=1"])

        assert excinfo.value.code == 2
        assert "Invalid --set override: unknown setting 'bogus'" in capsys.readouterr().err

    def test_missing_command_prints_help(self, settings_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as excinfo:
            app.main(["--settings-path", str(settings_path)])

        assert excinfo.value.code == 2
        assert "usage: loremaster" in capsys.readouterr().err

    def test_unreadable_schema(self, settings_path: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        schema = tmp_path / "schema.json"
        schema.write_text("[1, 2]", encoding="utf-8")

        with pytest.raises(SystemExit) as excinfo:
            app.main(["--settings-path", str(settings_path), "ask", "hello", "--schema", str(schema)])

        assert excinfo.value.code == 2
        assert "Unable to load schema" in capsys.readouterr().err


# =============================================================================
# Wiring
# =============================================================================


class TestWiring:
    def test_load_schema_catalog(self, tmp_path: Path) -> None:
        path = tmp_path / "schema.json"
        path.write_text(json.dumps(SCHEMA), encoding="utf-8")

        catalog = app.load_schema_catalog(path)

        assert catalog.list_tables() == ["Items"]

    @pytest.mark.asyncio
    async def test_build_orchestrator_uses_settings(self) -> None:
        settings = Settings(max_tool_iterations=3, max_continuations=1, integrations={"tracker": "http://tracker"})

        orchestrator, backends = app.build_orchestrator(settings, client=FakeModelClient([]))

        assert orchestrator.config.max_iterations == 3
        assert orchestrator.config.max_continuations == 1
        assert "search_issues" in orchestrator.registry
        assert "- **search_issues** -" in orchestrator.config.system_prompt
        assert orchestrator.registry.frozen
        await backends.aclose()


# =============================================================================
# Asking questions
# =============================================================================


class TestAsk:
    @pytest.mark.asyncio
    async def test_answer_is_streamed_and_documents_reported(self) -> None:
        client = FakeModelClient(
            [
                tool_use("toolu_1", "create_document", {"title": "Drops", "description": "d", "html": "<p>x</p>"}),
                anthropic_stream(text=["Here ", "it is."]),
            ]
        )
        out, err = io.StringIO(), io.StringIO()

        turn = await app.ask(Settings(api_key="k"), "make a sheet", client=client, out=out, err=err)

        assert turn.succeeded
        assert out.getvalue() == "Here it is.\n"
        assert "[create_document] ok\n" in err.getvalue()
        assert "[document] doc-1: Drops (8 chars)\n" in err.getvalue()
        assert client.closed
        assert client.messages[0][0].role == "system"

    @pytest.mark.asyncio
    async def test_transport_error_is_printed(self) -> None:
        client = FakeModelClient([TransportError(401, '{"error": {"message": "invalid x-api-key"}}')])
        out, err = io.StringIO(), io.StringIO()

        turn = await app.ask(Settings(), "hello", client=client, out=out, err=err)

        assert turn.error == "backend returned HTTP 401: invalid x-api-key"
        assert out.getvalue() == ""
        assert err.getvalue() == "Error: backend returned HTTP 401: invalid x-api-key\n"
        assert client.closed

    @pytest.mark.asyncio
    async def test_truncation_is_reported(self) -> None:
        client = FakeModelClient([anthropic_stream(text=["cut"], stop_reason="max_tokens")])
        err = io.StringIO()

        turn = await app.ask(Settings(max_continuations=0), "long answer", client=client, out=io.StringIO(), err=err)

        assert turn.truncated
        assert "[truncated]" in err.getvalue()

    def test_main_ask(
        self,
        settings_path: Path,
        tmp_path: Path,
        scripted_client,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        schema = tmp_path / "schema.json"
        schema.write_text(json.dumps(SCHEMA), encoding="utf-8")
        client = scripted_client(anthropic_stream(text=["Swords drop from bosses."]))

        app.main(["--settings-path", str(settings_path), "ask", "what", "drops?", "--schema", str(schema)])

        assert capsys.readouterr().out == "Swords drop from bosses.\n"
        request = client.requests[0]
        assert request["messages"][-1].content == "what drops?"
        assert [tool["name"] for tool in request["tools"]] == ["show_table_schema", "create_document", "patch_document"]
        assert "[(ungrouped)] Items(pk:id)" in request["messages"][0].content

    def test_main_exits_non_zero_on_turn_error(self, settings_path: Path, scripted_client) -> None:
        scripted_client(TransportError(500, "down"))

        with pytest.raises(SystemExit) as excinfo:
            app.main(["--settings-path", str(settings_path), "ask", "hello"])

        assert excinfo.value.code == 1
