import json
import os

import pytest
import yaml

from topo.descriptors import (
    DescriptorStore,
    ServiceDescriptor,
    load_compose,
    load_file,
    parse_duration,
    parse_size,
    resolve_environment,
)
from topo.errors import DescriptorError, RouteConflict, UnknownDependency
from topo.graph import DependencyGraph

EXAMPLES = os.path.join(os.path.dirname(os.path.dirname(__file__)), "examples")


def test_durations_and_sizes():
    assert parse_duration(5) == 5.0
    assert parse_duration("2.5") == 2.5
    assert parse_duration("30s") == 30.0
    assert parse_duration("1m30s") == 90.0
    assert parse_duration("500ms") == 0.5
    with pytest.raises(ValueError):
        parse_duration("soon")

    assert parse_size(1024) == 1024
    assert parse_size("16G") == 16 * 1024**3
    assert parse_size("512Mi") == 512 * 1024**2
    assert parse_size("1.5k") == 1536
    with pytest.raises(ValueError):
        parse_size("lots")


def test_from_dict_mapping_and_defaults():
    store = DescriptorStore.from_dict(
        {
            "resources": {"gpu": 1},
            "services": {
                "db": {"image": "postgres:16", "ports": ["5432"]},
                "api": {
                    "command": "python -m api --port 9000",
                    "ports": [9000],
                    "depends_on": ["db", "db"],
                    "environment": ["MODE=dev", "EMPTY"],
                    "healthcheck": {"kind": "http", "target": "health", "interval": "5s"},
                    "route": {"listen_port": 8443},
                },
            },
        }
    )
    assert store.names() == ["api", "db"]
    assert len(store) == 2
    assert "api" in store and "ghost" not in store
    assert dict(store.capacities) == {"gpu": 1}

    api = store.get("api")
    assert api.command == ("python", "-m", "api", "--port", "9000")
    assert api.depends_on == ("db",)
    assert api.environment == {"MODE": "dev", "EMPTY": ""}
    assert api.restart_policy == "on-failure"
    assert api.healthcheck.http_path == "/health"
    assert api.healthcheck.interval == 5.0
    assert api.healthcheck.failure_threshold == 3
    assert api.route.tls is True and api.route.upgrade is True
    assert api.route_target_port == 9000
    assert store.get("db").ports == (5432,)
    assert [d.name for d in store.routed()] == ["api"]

    with pytest.raises(KeyError):
        store.get("ghost")


def test_from_dict_accepts_a_list():
    store = DescriptorStore.from_dict({"services": [{"name": "a", "image": "x"}, {"name": "b", "image": "y"}]})
    assert [d.name for d in store] == ["a", "b"]


def test_descriptors_are_frozen():
    d = ServiceDescriptor(name="a", image="x")
    with pytest.raises(Exception):
        d.image = "y"


@pytest.mark.parametrize(
    "item",
    [
        {"name": "Bad_Name", "image": "x"},
        {"name": "1abc", "image": "x"},
        {"name": "nothing-to-run"},
        {"name": "a", "image": "x", "restart_policy": "sometimes"},
        {"name": "a", "image": "x", "ports": [70000]},
        {"name": "a", "image": "x", "route": {"listen_port": 443}},
        {"name": "a", "image": "x", "healthcheck": {"kind": "exec"}},
        {"name": "a", "image": "x", "healthcheck": {"kind": "tcp", "target": "/health"}},
        {"name": "a", "image": "x", "healthcheck": {"kind": "http", "interval": 0}},
        {"name": "a", "image": "x", "unknown_key": 1},
    ],
)
def test_invalid_descriptors_are_rejected(item):
    with pytest.raises(DescriptorError):
        DescriptorStore.from_dict({"services": [item]})


def test_duplicate_names_and_unknown_dependencies():
    with pytest.raises(DescriptorError, match="Duplicate"):
        DescriptorStore.from_dict({"services": [{"name": "a", "image": "x"}, {"name": "a", "image": "y"}]})
    with pytest.raises(UnknownDependency) as exc:
        DescriptorStore.from_dict({"services": {"a": {"image": "x", "depends_on": ["ghost"]}}})
    assert exc.value.service == "a"
    assert exc.value.dependency == "ghost"


def test_overlapping_listen_ports_conflict():
    with pytest.raises(RouteConflict) as exc:
        DescriptorStore.from_dict(
            {
                "services": {
                    "ui": {"image": "ui", "ports": [8080], "route": {"listen_port": 443}},
                    "admin": {"image": "admin", "ports": [9000], "route": {"listen_port": 443}},
                }
            }
        )
    assert exc.value.listen_port == 443
    assert exc.value.services == ["admin", "ui"]


def test_health_check_probe_port():
    d = ServiceDescriptor(name="a", image="x", ports=(8080, 9090), healthcheck={"kind": "tcp"})
    assert d.healthcheck.probe_port(d.ports) == 8080
    d = ServiceDescriptor(name="a", image="x", ports=(8080,), healthcheck={"kind": "tcp", "target": 6379})
    assert d.healthcheck.probe_port(d.ports) == 6379
    d = ServiceDescriptor(name="a", image="x", ports=(8080,), healthcheck={"kind": "http", "port": 9000})
    assert d.healthcheck.probe_port(d.ports) == 9000
    d = ServiceDescriptor(name="a", image="x", healthcheck={"kind": "exec", "target": "pg_isready -U 'app user'"})
    assert d.healthcheck.exec_argv == ["pg_isready", "-U", "app user"]


def test_resolve_environment():
    env = {
        "URL": "postgres://${USER}:${PASS}@db/${DB:-app}",
        "MISSING": "${NOPE}",
        "EMPTY_DEFAULT": "${BLANK:-fallback}",
        "EMPTY_KEEP": "${BLANK-fallback}",
        "UNSET_DEFAULT": "${UNSET-fallback}",
        "DOLLAR": "$$HOME",
        "PLAIN": "no placeholders",
    }
    out = resolve_environment(env, {"USER": "admin", "PASS": "s3cret", "BLANK": ""})
    assert out == {
        "URL": "postgres://admin:s3cret@db/app",
        "MISSING": "",
        "EMPTY_DEFAULT": "fallback",
        "EMPTY_KEEP": "",
        "UNSET_DEFAULT": "fallback",
        "DOLLAR": "$HOME",
        "PLAIN": "no placeholders",
    }


def test_resolve_environment_defaults_to_os_environ(monkeypatch):
    monkeypatch.setenv("TOPO_TEST_VAR", "from-env")
    assert resolve_environment({"X": "${TOPO_TEST_VAR}"}) == {"X": "from-env"}


def test_load_file_yaml_and_json(tmp_path):
    data = {
        "services": {
            "a": {"image": "x"},
            "b": {"image": "y", "depends_on": ["a"], "ports": [80], "route": {"listen_port": 8080, "tls": False}},
        }
    }
    yml = tmp_path / "topology.yaml"
    yml.write_text(yaml.safe_dump(data), encoding="utf-8")
    js = tmp_path / "topology.json"
    js.write_text(json.dumps(data), encoding="utf-8")

    for path in (yml, js):
        store = load_file(path)
        assert store.names() == ["a", "b"]
        assert store.get("b").route.tls is False


def test_load_file_errors(tmp_path):
    bad = tmp_path / "bad.yaml"
    bad.write_text("services: [unclosed", encoding="utf-8")
    with pytest.raises(DescriptorError):
        load_file(bad)

    scalar = tmp_path / "scalar.yaml"
    scalar.write_text("just a string\n", encoding="utf-8")
    with pytest.raises(DescriptorError):
        load_file(scalar)

    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert len(load_file(empty)) == 0


def test_example_topology_levels():
    store = load_file(os.path.join(EXAMPLES, "topology.yaml"))
    graph = DependencyGraph(store)
    assert graph.levels() == [["store"], ["api", "worker"]]
    assert store.get("worker").restart_policy == "never"
    assert store.get("api").route.listen_port == 8443
    assert store.capacities["memory"] == "8G"


def test_compose_manifest_is_mapped():
    path = os.path.join(EXAMPLES, "llm-stack.compose.yaml")
    store = load_file(path)
    assert store.names() == load_compose(path).names()
    assert store.names() == ["grafana", "open-webui", "postgres", "qdrant", "redis"]
    assert dict(store.capacities) == {"gpu": 1, "memory": "64G"}

    ui = store.get("open-webui")
    assert ui.depends_on == ("postgres", "redis", "qdrant")
    assert ui.ports == (8080,)
    assert ui.resources.gpu == 1
    assert ui.resources.cpu == 8.0
    assert ui.resources.memory == 16 * 1024**3
    assert ui.restart_policy == "always"
    assert ui.healthcheck.kind == "exec"
    assert ui.healthcheck.exec_argv == ["curl", "-f", "http://localhost:8080/health"]
    assert ui.healthcheck.failure_threshold == 5
    assert ui.healthcheck.interval == 30.0
    assert ui.healthcheck.timeout == 10.0
    assert ui.environment["REDIS_URL"] == "redis://redis:6379"
    assert ui.route.listen_port == 443

    pg = store.get("postgres")
    assert pg.healthcheck.exec_argv == ["sh", "-c", "pg_isready -U ${POSTGRES_USER}"]
    assert pg.environment["POSTGRES_DB"] == "${POSTGRES_DB:-openwebui}"
    assert pg.route is None

    assert store.get("redis").command == ("redis-server", "--appendonly", "yes")
    assert store.get("grafana").restart_policy == "always"
    assert store.get("qdrant").route.upgrade is False

    graph = DependencyGraph(store)
    assert graph.levels() == [["grafana", "postgres", "qdrant", "redis"], ["open-webui"]]


def test_compose_restart_and_dependency_forms():
    store = load_compose(
        {
            "services": {
                "db": {"image": "postgres", "restart": "no", "ports": ["127.0.0.1:15432:5432/tcp"]},
                "app": {
                    "image": "app",
                    "restart": "on-failure:3",
                    "depends_on": {"db": {"condition": "service_healthy"}},
                    "healthcheck": {"test": "curl -f http://localhost/ || exit 1", "retries": 2},
                },
            }
        }
    )
    assert store.get("db").restart_policy == "never"
    assert store.get("db").ports == (5432,)
    app = store.get("app")
    assert app.restart_policy == "on-failure"
    assert app.depends_on == ("db",)
    assert app.healthcheck.exec_argv == ["sh", "-c", "curl -f http://localhost/ || exit 1"]
    assert app.healthcheck.failure_threshold == 2

    with pytest.raises(DescriptorError):
        load_compose({"services": {"x": {"image": "x", "restart": "sometimes"}}})
