"""Tests for the CLI entry point."""

import json
import os
import tempfile

import httpx
import yaml
from click.testing import CliRunner

from perfgate.cli import main
from perfgate.markers import read_markers


FIXTURES_DIR = os.path.join(os.path.dirname(__file__), "..", "fixtures")

# Nothing listens on the discard port; every request fails fast.
UNREACHABLE = "http://127.0.0.1:9"


def _write_config(tmpdir, **threshold):
    data = {
        "target": {"base_url": UNREACHABLE, "endpoints": ["/", "/fast"]},
        "load": {"mode": "trickle", "requests": 2, "interval_ms": 0, "timeout_seconds": 2},
        "threshold": threshold or {"metric": "error_rate", "operator": "below", "value": 0.5},
        "deployment": {"revision": "3f9c2a1", "actor": "release-bot"},
    }
    path = os.path.join(tmpdir, "pipeline.yaml")
    with open(path, "w") as f:
        yaml.safe_dump(data, f)
    return path


class TestGateCommand:
    def test_passing_snapshot(self):
        metrics = os.path.join(FIXTURES_DIR, "metrics-passing.json")
        runner = CliRunner()
        result = runner.invoke(
            main,
            ["gate", "--metrics", metrics, "--metric", "avg_duration",
             "--operator", "below", "--value", "500"],
        )
        assert result.exit_code == 0
        assert "PASSED" in result.output

    def test_failing_snapshot(self):
        metrics = os.path.join(FIXTURES_DIR, "metrics-failing.json")
        runner = CliRunner()
        result = runner.invoke(
            main,
            ["gate", "--metrics", metrics, "--metric", "avg_duration",
             "--operator", "below", "--value", "500"],
        )
        assert result.exit_code == 1
        assert "FAILED" in result.output
        assert '"outcome": "fail"' in result.output

    def test_unknown_metric_is_config_error(self):
        metrics = os.path.join(FIXTURES_DIR, "metrics-passing.json")
        runner = CliRunner()
        result = runner.invoke(
            main,
            ["gate", "--metrics", metrics, "--metric", "apdex",
             "--operator", "below", "--value", "1"],
        )
        assert result.exit_code == 2

    def test_unavailable_metric_is_config_error(self):
        metrics = os.path.join(FIXTURES_DIR, "metrics-passing.json")
        runner = CliRunner()
        result = runner.invoke(
            main,
            ["gate", "--metrics", metrics, "--metric", "latency_p95",
             "--operator", "below", "--value", "1"],
        )
        assert result.exit_code == 2


class TestPipelineCommand:
    def test_breach_notifies_without_failing(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = _write_config(tmpdir)
            report = os.path.join(tmpdir, "report.md")
            markers = os.path.join(tmpdir, "markers.jsonl")
            runner = CliRunner()
            result = runner.invoke(
                main,
                ["pipeline", "--config", config, "--report", report, "--markers", markers],
                env={"GITHUB_SHA": "", "GITHUB_ACTOR": ""},
            )
            assert result.exit_code == 0, result.output
            assert "deploy-production: skipped" in result.output
            assert "notify-performance-issue: ran-ok" in result.output
            assert "Pipeline passed" in result.output
            with open(report) as f:
                text = f.read()
            assert "Result: FAILED" in text
            logged = read_markers(markers)
            assert [m.environment for m in logged] == ["staging"]
            assert logged[0].revision == "3f9c2a1"

    def test_revision_from_environment(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = _write_config(tmpdir, metric="error_rate", operator="above", value=0.5)
            markers = os.path.join(tmpdir, "markers.jsonl")
            runner = CliRunner()
            result = runner.invoke(
                main,
                ["pipeline", "--config", config, "--markers", markers],
                env={"GITHUB_SHA": "deadbeef", "GITHUB_ACTOR": "octocat"},
            )
            assert result.exit_code == 0, result.output
            logged = read_markers(markers)
            assert [m.environment for m in logged] == ["staging", "production"]
            assert {m.revision for m in logged} == {"deadbeef"}
            assert {m.actor for m in logged} == {"octocat"}

    def test_gate_fault_fails_pipeline(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = _write_config(tmpdir, metric="apdex", operator="below", value=1)
            runner = CliRunner()
            result = runner.invoke(main, ["pipeline", "--config", config])
            assert result.exit_code == 1
            assert "performance-gate: ran-failed" in result.output
            assert "ERROR: no gate decision was produced." in result.output

    def test_report_is_write_once(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = _write_config(tmpdir)
            report = os.path.join(tmpdir, "report.md")
            with open(report, "w") as f:
                f.write("existing\n")
            markers = os.path.join(tmpdir, "markers.jsonl")
            runner = CliRunner()
            result = runner.invoke(
                main,
                ["pipeline", "--config", config, "--report", report, "--markers", markers],
            )
            assert result.exit_code == 2
            assert "report already exists" in result.output
            # nothing was deployed
            assert read_markers(markers) == []
            assert "deploy-staging" not in result.output
            with open(report) as f:
                assert f.read() == "existing\n"

    def test_invalid_config(self):
        with tempfile.NamedTemporaryFile(suffix=".json", mode="w", delete=False) as f:
            json.dump({"not": "a config"}, f)
        try:
            runner = CliRunner()
            result = runner.invoke(main, ["pipeline", "--config", f.name])
            assert result.exit_code == 2
        finally:
            os.unlink(f.name)


class TestLoadTestCommand:
    def test_unreachable_target_breaches(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            config = _write_config(tmpdir)
            out = os.path.join(tmpdir, "metrics.json")
            runner = CliRunner()
            result = runner.invoke(main, ["load-test", "--config", config, "--json-out", out])
            assert result.exit_code == 1
            assert "- Requests: 2" in result.output
            with open(out) as f:
                assert json.load(f)["error_rate"] == 1.0


class TestTrafficCommand:
    def test_reports_each_request(self):
        runner = CliRunner()
        result = runner.invoke(
            main,
            ["traffic", "--base-url", UNREACHABLE, "--endpoint", "/fast",
             "--requests", "3", "--interval-ms", "0"],
        )
        assert result.exit_code == 0
        assert result.output.count("/fast: Error") == 3
        assert "Sent 3 requests" in result.output

    def test_invalid_count(self):
        runner = CliRunner()
        result = runner.invoke(main, ["traffic", "--requests", "0"])
        assert result.exit_code == 2


class TestWeeklyReportCommand:
    def test_renders_from_query_service(self, monkeypatch):
        with open(os.path.join(FIXTURES_DIR, "query-facets.json")) as f:
            payload = json.load(f)
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=payload))
        original = httpx.Client.__init__

        def patched(self, *args, **kwargs):
            kwargs["transport"] = transport
            original(self, *args, **kwargs)

        monkeypatch.setattr(httpx.Client, "__init__", patched)
        runner = CliRunner()
        result = runner.invoke(
            main,
            ["weekly-report", "--query-url", "http://metrics.test", "--target", "demo", "--top", "2"],
        )
        assert result.exit_code == 0, result.output
        assert "| 1 | WebTransaction/Expressjs/GET//slow | 2004.70 | 96 |" in result.output
        assert "| 2 | WebTransaction/Expressjs/GET//error | 4.20 | 210 |" in result.output

    def test_query_failure(self, monkeypatch):
        transport = httpx.MockTransport(lambda request: httpx.Response(500))
        original = httpx.Client.__init__

        def patched(self, *args, **kwargs):
            kwargs["transport"] = transport
            original(self, *args, **kwargs)

        monkeypatch.setattr(httpx.Client, "__init__", patched)
        runner = CliRunner()
        result = runner.invoke(
            main, ["weekly-report", "--query-url", "http://metrics.test", "--target", "demo"],
        )
        assert result.exit_code == 2

    def test_threshold_gates_window_value(self, monkeypatch):
        with open(os.path.join(FIXTURES_DIR, "query-facets.json")) as f:
            facets = json.load(f)
        seen = []

        def handler(request):
            seen.append(dict(request.url.params))
            if "facet" in request.url.params:
                return httpx.Response(200, json=facets)
            return httpx.Response(200, json={"value": 650.0})

        transport = httpx.MockTransport(handler)
        original = httpx.Client.__init__

        def patched(self, *args, **kwargs):
            kwargs["transport"] = transport
            original(self, *args, **kwargs)

        monkeypatch.setattr(httpx.Client, "__init__", patched)
        runner = CliRunner()
        result = runner.invoke(
            main,
            ["weekly-report", "--query-url", "http://metrics.test", "--target", "demo",
             "--threshold", "500"],
        )
        assert result.exit_code == 1, result.output
        assert "Gate: FAILED - avg_duration 650.00 below 500" in result.output
        assert "| 1 | WebTransaction/Expressjs/GET//slow | 2004.70 | 96 |" in result.output
        assert [p.get("facet") for p in seen] == ["name", None]
        assert {p["since"] for p in seen} == {"604800"}

    def test_threshold_with_unknown_metric(self, monkeypatch):
        with open(os.path.join(FIXTURES_DIR, "query-facets.json")) as f:
            facets = json.load(f)
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=facets))
        original = httpx.Client.__init__

        def patched(self, *args, **kwargs):
            kwargs["transport"] = transport
            original(self, *args, **kwargs)

        monkeypatch.setattr(httpx.Client, "__init__", patched)
        runner = CliRunner()
        result = runner.invoke(
            main,
            ["weekly-report", "--query-url", "http://metrics.test", "--target", "demo",
             "--metric", "apdex", "--threshold", "0.9"],
        )
        assert result.exit_code == 2


class TestMarkersCommand:
    def test_lists_markers_for_environment(self):
        with tempfile.TemporaryDirectory() as tmpdir:
            log_path = os.path.join(tmpdir, "markers.jsonl")
            with open(log_path, "w") as f:
                f.write('{"revision":"r1","actor":"ci","timestamp":"t1","environment":"staging"}\n')
                f.write('{"revision":"r1","actor":"ci","timestamp":"t2","environment":"production"}\n')
            runner = CliRunner()
            result = runner.invoke(main, ["markers", "--log", log_path, "--environment", "production"])
            assert result.exit_code == 0
            assert "t2 production r1 (ci)" in result.output
            assert "staging" not in result.output
            assert "1 marker(s)" in result.output
