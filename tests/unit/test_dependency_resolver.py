"""
Unit tests for building the service graph.
"""
import random

import pytest

from stackup.errors import ConfigurationError, CyclicDependency, DuplicateService, UnknownDependency
from stackup.MODELS.orchestration_config import OrchestrationConfig
from stackup.MODELS.service_definition import ServiceDefinition
from stackup.RUNNERS.dependency_resolver import DependencyResolver


def svc(name, *deps):
    return ServiceDefinition(name=name, image_name="dummy", depends_on=list(deps))


def assert_respects_edges(order, services):
    position = {name: i for i, name in enumerate(order)}
    for s in services:
        for dep in s.depends_on:
            assert position[dep] < position[s.name], f"{dep} must start before {s.name}"


class TestOrdering:

    def test_simple_chain(self):
        graph = DependencyResolver().build([svc("ui", "api"), svc("api", "db"), svc("db")])
        assert graph.startup_order() == ["db", "api", "ui"]
        assert graph.shutdown_order() == ["ui", "api", "db"]

    def test_ties_follow_declaration_order(self):
        graph = DependencyResolver().build([svc("c"), svc("a"), svc("b")])
        assert graph.startup_order() == ["c", "a", "b"]

    def test_diamond(self):
        services = [svc("ui", "api", "search"), svc("api", "db"), svc("search", "db"), svc("db")]
        graph = DependencyResolver().build(services)
        assert graph.startup_order() == ["db", "api", "search", "ui"]
        assert graph.startup_levels() == [["db"], ["api", "search"], ["ui"]]

    def test_random_dags_respect_edges_and_are_deterministic(self):
        rng = random.Random(1234)
        for _ in range(50):
            names = [f"s{i}" for i in range(rng.randint(1, 12))]
            # Edges only point to earlier names, so the graph is acyclic
            services = [
                svc(name, *rng.sample(names[:i], rng.randint(0, min(i, 3))))
                for i, name in enumerate(names)
            ]
            rng.shuffle(services)

            first = DependencyResolver().build(services).startup_order()
            second = DependencyResolver().build(services).startup_order()
            assert first == second
            assert sorted(first) == sorted(names)
            assert_respects_edges(first, services)

    def test_duplicate_dependency_entries(self):
        graph = DependencyResolver().build([svc("api", "db", "db"), svc("db")])
        assert graph.dependencies("api") == ["db"]

    def test_resolve_order_from_config(self):
        config = OrchestrationConfig(services={"web": svc("web", "db"), "db": svc("db")})
        assert DependencyResolver().resolve_order(config) == ["db", "web"]


class TestRelations:

    @pytest.fixture
    def graph(self):
        return DependencyResolver().build([
            svc("db"), svc("cache"), svc("api", "db", "cache"), svc("ui", "api"), svc("worker", "db"),
        ])

    def test_direct(self, graph):
        assert graph.dependencies("api") == ["db", "cache"]
        assert graph.dependents("db") == ["api", "worker"]

    def test_transitive(self, graph):
        assert graph.ancestors("ui") == {"api", "db", "cache"}
        assert graph.descendants("db") == {"api", "ui", "worker"}
        assert graph.ancestors("db") == set()

    def test_container_protocol(self, graph):
        assert "api" in graph
        assert "missing" not in graph
        assert len(graph) == 5
        assert list(graph) == graph.startup_order()
        assert graph["api"].name == "api"


class TestErrors:

    def test_cycle(self):
        with pytest.raises(CyclicDependency) as exc:
            DependencyResolver().build([svc("a", "b"), svc("b", "c"), svc("c", "a")])
        assert sorted(exc.value.cycle) == ["a", "b", "c"]
        assert "a -> b -> c -> a" in str(exc.value)

    def test_cycle_reports_only_members(self):
        with pytest.raises(CyclicDependency) as exc:
            DependencyResolver().build([svc("root"), svc("x", "root", "y"), svc("y", "x"), svc("z", "y")])
        assert sorted(exc.value.cycle) == ["x", "y"]

    def test_self_dependency(self):
        with pytest.raises(CyclicDependency) as exc:
            DependencyResolver().build([svc("a", "a")])
        assert exc.value.cycle == ["a"]

    def test_unknown_dependency(self):
        with pytest.raises(UnknownDependency) as exc:
            DependencyResolver().build([svc("api", "db")])
        assert exc.value.service == "api"
        assert exc.value.dependency == "db"

    def test_duplicate_service(self):
        with pytest.raises(DuplicateService):
            DependencyResolver().build([svc("a"), svc("a")])

    def test_errors_are_configuration_errors(self):
        for services in ([svc("a", "a")], [svc("a", "b")], [svc("a"), svc("a")]):
            with pytest.raises(ConfigurationError):
                DependencyResolver().build(services)
