"""Tests for the command line interface."""
from __future__ import annotations

import json

import httpx
import pytest
import yaml
from click.testing import CliRunner

from arazzo_engine.cli import main
from arazzo_engine.workflows.step_executor import HttpxStepExecutor

OPENAPI = {
    "openapi": "3.0.3",
    "info": {"title": "Pets", "version": "1.0"},
    "servers": [{"url": "http://pets.test"}],
    "paths": {
        "/login": {"post": {"operationId": "login"}},
        "/pets": {"get": {"operationId": "listPets"}},
    },
}

DOCUMENT = {
    "arazzo": "1.0.0",
    "info": {"title": "Pets", "version": "1.0"},
    "sourceDescriptions": [{"name": "api", "url": "openapi.yaml", "type": "openapi"}],
    "workflows": [
        {
            "workflowId": "listing",
            "dependsOn": ["auth"],
            "steps": [
                {
                    "stepId": "list",
                    "operationId": "listPets",
                    "parameters": [
                        {"name": "Authorization", "in": "header", "value": "Bearer {$workflows.auth.outputs.token}"}
                    ],
                    "successCriteria": [{"condition": "$statusCode == 200"}],
                    "outputs": {"first": "$response.body.0.name"},
                }
            ],
            "outputs": {"first": "$steps.list.outputs.first"},
        },
        {
            "workflowId": "auth",
            "inputs": {"type": "object", "properties": {"user": {"type": "string"}}},
            "steps": [
                {
                    "stepId": "login",
                    "operationId": "login",
                    "requestBody": {"payload": {"user": "$inputs.user"}},
                    "successCriteria": [{"condition": "$statusCode == 200"}],
                    "outputs": {"token": "$response.body.token"},
                }
            ],
            "outputs": {"token": "$steps.login.outputs.token"},
        },
    ],
}


def api(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/login":
        user = json.loads(request.content)["user"]
        return httpx.Response(200, json={"token": f"token-{user}"})
    if request.headers.get("Authorization") != "Bearer token-alice":
        return httpx.Response(401, json={"error": "unauthorized"})
    return httpx.Response(200, json=[{"name": "Rex"}, {"name": "Tom"}])


@pytest.fixture
def mock_api(mocker):
    factory = HttpxStepExecutor.factory

    def patched(config=None, transport=None):
        return factory(config, transport=httpx.MockTransport(api))

    mocker.patch.object(HttpxStepExecutor, "factory", side_effect=patched)


@pytest.fixture
def project(tmp_path):
    (tmp_path / "openapi.yaml").write_text(yaml.safe_dump(OPENAPI))
    (tmp_path / "workflow.arazzo.yaml").write_text(yaml.safe_dump(DOCUMENT))
    (tmp_path / "inputs.json").write_text(json.dumps({"user": "alice"}))
    return tmp_path


@pytest.fixture
def cli():
    return CliRunner()


class TestRun:
    """Tests for the `run` command."""

    def test_runs_workflows_in_dependency_order(self, cli, project, mock_api):
        output = project / "results.json"
        result = cli.invoke(
            main,
            [
                "run",
                str(project / "workflow.arazzo.yaml"),
                "--inputs",
                str(project / "inputs.json"),
                "--output",
                str(output),
                "--verbose",
            ],
        )

        assert result.exit_code == 0, result.output
        assert result.output.index("auth PASSED") < result.output.index("listing PASSED")
        assert "first = Rex" in result.output
        assert "[PASSED] login -> 200" in result.output
        report = json.loads(output.read_text())
        assert (report["total_workflows"], report["passed"], report["failed"]) == (2, 2, 0)
        assert report["results"][1]["outputs"] == {"first": "Rex"}

    def test_failure_exits_with_error(self, cli, project, mock_api):
        (project / "inputs.json").write_text(json.dumps({"user": "mallory"}))
        result = cli.invoke(
            main, ["run", str(project / "workflow.arazzo.yaml"), "--inputs", str(project / "inputs.json")]
        )

        assert result.exit_code == 1
        assert "auth PASSED" in result.output
        assert "listing FAILED" in result.output
        assert "No failure action handles the unsuccessful step" in result.output

    def test_selected_workflow(self, cli, project, mock_api):
        result = cli.invoke(
            main,
            ["run", str(project / "workflow.arazzo.yaml"), "-i", str(project / "inputs.json"), "-w", "auth"],
        )
        assert result.exit_code == 0, result.output
        assert "auth PASSED" in result.output
        assert "listing" not in result.output

    def test_header_option_is_validated(self, cli, project):
        result = cli.invoke(main, ["run", str(project / "workflow.arazzo.yaml"), "-H", "no-colon"])
        assert result.exit_code == 2
        assert "Expected 'Name: Value'" in result.output

    def test_invalid_document(self, cli, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("arazzo: 1.0.0\nworkflows: [{steps: []}]\n")
        result = cli.invoke(main, ["run", str(path)])
        assert result.exit_code == 1
        assert "Failed to load workflows" in result.output


class TestOrder:
    def test_prints_execution_order(self, cli, project):
        result = cli.invoke(main, ["order", str(project / "workflow.arazzo.yaml")])
        assert result.exit_code == 0, result.output
        lines = result.output.splitlines()
        assert lines.index("1. auth") < lines.index("2. listing (after auth)")

    def test_cycle(self, cli, project):
        document = dict(DOCUMENT)
        document["workflows"] = [
            {**DOCUMENT["workflows"][0]},
            {**DOCUMENT["workflows"][1], "dependsOn": ["listing"]},
        ]
        (project / "workflow.arazzo.yaml").write_text(yaml.safe_dump(document))
        result = cli.invoke(main, ["order", str(project / "workflow.arazzo.yaml")])
        assert result.exit_code == 1
        assert "Circular dependency detected" in result.output


class TestConfiguration:
    """Tests for the global options."""

    def test_missing_config_file(self, cli, project):
        result = cli.invoke(main, ["--config-file", "missing.toml", "order", str(project / "workflow.arazzo.yaml")])
        assert result.exit_code == 1
        assert "Failed to load configuration file from missing.toml" in result.output

    def test_invalid_config_file(self, cli, project, tmp_path):
        config = tmp_path / "bad.toml"
        config.write_text("unknown = 1")
        result = cli.invoke(main, ["--config-file", str(config), "order", str(project / "workflow.arazzo.yaml")])
        assert result.exit_code == 1
        assert "The loaded configuration is incorrect" in result.output

    def test_base_url_from_config(self, cli, project, tmp_path, mocker):
        config = tmp_path / "engine.toml"
        config.write_text('[http]\nbase-url = "http://other.test"\n')
        seen = []

        def handler(request):
            seen.append(str(request.url))
            return api(request)

        factory = HttpxStepExecutor.factory
        mocker.patch.object(
            HttpxStepExecutor,
            "factory",
            side_effect=lambda config=None, transport=None: factory(config, transport=httpx.MockTransport(handler)),
        )
        result = cli.invoke(
            main,
            [
                "--config-file",
                str(config),
                "run",
                str(project / "workflow.arazzo.yaml"),
                "-i",
                str(project / "inputs.json"),
            ],
        )
        assert result.exit_code == 0, result.output
        assert seen == ["http://other.test/login", "http://other.test/pets"]

    def test_version(self, cli):
        result = cli.invoke(main, ["--version"])
        assert result.exit_code == 0
        assert "arazzo-engine" in result.output
