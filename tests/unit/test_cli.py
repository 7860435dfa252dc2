"""Test CLI commands."""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from inference_orchestrator.cli import cli

VALID_DEFINITIONS = {
    "experiments": [
        {
            "id": "exp_tone",
            "name": "Advisor tone",
            "capability": "communication_advisor",
            "variants": [
                {"id": "control", "allocation_percent": 50, "is_control": True},
                {"id": "warm", "allocation_percent": 50},
            ],
        }
    ],
    "flags": [{"id": "new_ui", "enabled": True, "rollout_percent": 25}],
}


@pytest.fixture
def runner():
    return CliRunner()


class TestCLICommands:
    """Test CLI commands"""

    def test_version_command(self, runner):
        """Test version command."""
        with patch("inference_orchestrator.cli.get_version", return_value="1.0.0"):
            result = runner.invoke(cli, ["version"])

        assert result.exit_code == 0
        assert "1.0.0" in result.output

    def test_version_json_format(self, runner):
        """Test version command with JSON format."""
        with patch("inference_orchestrator.cli.get_version", return_value="1.0.0"):
            result = runner.invoke(cli, ["version", "--format", "json"])

        assert result.exit_code == 0
        assert json.loads(result.output)["version"] == "1.0.0"

    def test_help_command(self, runner):
        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "Usage:" in result.output


class TestValidateConfig:
    def test_valid_file(self, runner, tmp_path):
        path = tmp_path / "experiments.json"
        path.write_text(json.dumps(VALID_DEFINITIONS))

        result = runner.invoke(cli, ["validate-config", str(path)])

        assert result.exit_code == 0
        assert "experiment exp_tone: ok" in result.output
        assert "flag new_ui: ok" in result.output

    def test_invalid_definitions(self, runner, tmp_path):
        definitions = json.loads(json.dumps(VALID_DEFINITIONS))
        definitions["experiments"][0]["variants"][1]["allocation_percent"] = 47
        definitions["flags"][0]["rollout_percent"] = 150
        path = tmp_path / "experiments.json"
        path.write_text(json.dumps(definitions))

        result = runner.invoke(cli, ["validate-config", str(path)])

        assert result.exit_code == 1
        assert "experiment exp_tone: invalid" in result.output
        assert "Variant allocations must sum to 100% (allocations sum to 97%)" in result.output
        assert "Rollout percent must be between 0 and 100" in result.output

    def test_template_with_literal_braces_is_rejected(self, runner, tmp_path):
        definitions = json.loads(json.dumps(VALID_DEFINITIONS))
        definitions["experiments"][0]["variants"][1]["config"] = {
            "prompt_template": 'Answer as JSON like {"advice": "..."}: {prompt}'
        }
        path = tmp_path / "experiments.json"
        path.write_text(json.dumps(definitions))

        result = runner.invoke(cli, ["validate-config", str(path)])

        assert result.exit_code == 1
        assert "Variant 'warm' prompt_template is invalid" in result.output

    def test_unparseable_file(self, runner, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")

        result = runner.invoke(cli, ["validate-config", str(path)])
        assert result.exit_code == 2


class TestAnalysisCommands:
    def test_significance_json(self, runner):
        result = runner.invoke(
            cli,
            [
                "significance",
                "--control-conversions", "100",
                "--control-size", "1000",
                "--variant-conversions", "200",
                "--variant-size", "1000",
                "--format", "json",
            ],
        )

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["statistically_significant"] is True
        assert data["z_score"] == pytest.approx(6.262, abs=1e-3)

    def test_cost(self, runner):
        result = runner.invoke(
            cli, ["cost", "gpt-4o", "--input-tokens", "1000", "--output-tokens", "500", "--format", "json"]
        )

        data = json.loads(result.output)
        assert data["known_model"] is True
        assert data["cost_cents"] == pytest.approx(0.75)

    def test_cost_unknown_model(self, runner):
        result = runner.invoke(cli, ["cost", "mystery-model", "--input-tokens", "1000", "--output-tokens", "500"])

        assert result.exit_code == 0
        assert "known_model: False" in result.output
        assert "cost_cents: 5.25" in result.output

    def test_models(self, runner):
        result = runner.invoke(cli, ["models"])
        assert "gpt-4o\topenai" in result.output

    def test_sample_size(self, runner):
        result = runner.invoke(cli, ["sample-size", "--baseline", "0.1", "--mde", "0.2"])

        assert result.exit_code == 0
        assert 3700 <= int(result.output.strip()) <= 3900

    def test_sample_size_bad_input(self, runner):
        result = runner.invoke(cli, ["sample-size", "--baseline", "1.5", "--mde", "0.2"])
        assert result.exit_code == 2

    def test_capability_details(self, runner):
        result = runner.invoke(cli, ["capability", "progress_tracker", "--format", "json"])

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["model"] == "claude-3-haiku-20240307"
        assert data["fallback_model"] == "gpt-3.5-turbo"

    def test_capability_list_and_unknown(self, runner):
        listing = runner.invoke(cli, ["capability"])
        assert "communication_advisor" in listing.output.splitlines()

        unknown = runner.invoke(cli, ["capability", "fortune_teller"])
        assert unknown.exit_code == 2
        assert "Unknown capability: fortune_teller" in unknown.output
