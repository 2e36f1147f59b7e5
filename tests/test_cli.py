import json
import os

import cli

EXAMPLES = os.path.join(os.path.dirname(os.path.dirname(__file__)), "examples")


def test_plan_prints_levels_and_stop_order(capsys):
    assert cli.main(["plan", os.path.join(EXAMPLES, "llm-stack.compose.yaml")]) == 0
    plan = json.loads(capsys.readouterr().out)
    assert plan["levels"] == [["grafana", "postgres", "qdrant", "redis"], ["open-webui"]]
    assert plan["stop_order"][0] == "open-webui"
    assert [r["listen_port"] for r in plan["routes"]] == [443, 8085, 8087]
    assert plan["routes"][0] == {"listen_port": 443, "target": "open-webui", "target_port": 8080, "tls": True}
    assert plan["resources"]["open-webui"] == {"gpu": 1, "cpu": 8.0, "memory": 16 * 1024**3}


def test_validate(capsys):
    assert cli.main(["validate", os.path.join(EXAMPLES, "topology.yaml")]) == 0
    assert capsys.readouterr().out.strip() == "ok: 3 services, 1 routes"


def test_validate_reports_cycles(tmp_path, capsys):
    path = tmp_path / "cycle.yaml"
    path.write_text(
        "services:\n"
        "  a: {image: x, depends_on: [b]}\n"
        "  b: {image: y, depends_on: [a]}\n",
        encoding="utf-8",
    )
    assert cli.main(["validate", str(path)]) == 1
    assert "Cyclic dependency" in capsys.readouterr().err


def test_validate_missing_file(tmp_path, capsys):
    assert cli.main(["validate", str(tmp_path / "nope.yaml")]) == 1
    assert capsys.readouterr().err.startswith("error:")


def test_status_calls_the_api(monkeypatch, capsys):
    calls = []

    class _Resp:
        ok = True

        def json(self):
            return [{"name": "a", "state": "healthy"}]

    def fake_get(url, timeout=10, params=None):
        calls.append((url, params))
        return _Resp()

    monkeypatch.setattr(cli.requests, "get", fake_get)
    assert cli.main(["--api", "http://orch:9000/", "status"]) == 0
    assert calls == [("http://orch:9000/status", None)]
    assert json.loads(capsys.readouterr().out) == [{"name": "a", "state": "healthy"}]

    cli.main(["--api", "http://orch:9000", "events", "--limit", "3", "--service", "a"])
    assert calls[-1] == ("http://orch:9000/events", {"limit": 3, "service": "a"})
