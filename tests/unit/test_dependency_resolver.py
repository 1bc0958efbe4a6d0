"""
Unit tests for launch ordering.
"""
import pytest

from stackup.errors import DependencyCycleError
from stackup.MODELS.service_definition import ServiceDefinition
from stackup.MODELS.stack import Stack
from stackup.RUNNERS.dependency_resolver import DependencyResolver, find_cycle


def make_stack(deps):
    services = {
        name: ServiceDefinition(name=name, image="busybox", depends_on={d: "service_started" for d in ds})
        for name, ds in deps.items()
    }
    return Stack(services=services)


class TestDependencyResolver:
    """Tests for DependencyResolver."""

    def test_dependencies_come_first(self):
        stack = make_stack({"frontend": ["backend"], "backend": ["db"], "db": []})
        assert DependencyResolver().resolve_order(stack) == ["db", "backend", "frontend"]

    def test_ties_follow_declaration_order(self):
        stack = make_stack({"c": [], "a": [], "b": ["c"], "d": ["a"]})
        order = DependencyResolver().resolve_order(stack)
        assert order == ["c", "a", "b", "d"]

    def test_order_is_stable_across_runs(self):
        stack = make_stack({"web": ["api", "cache"], "api": ["db"], "cache": [], "db": [],
                            "worker": ["db", "cache"]})
        resolver = DependencyResolver()
        first = resolver.resolve_order(stack)
        assert all(resolver.resolve_order(stack) == first for _ in range(20))
        for name, svc in stack.services.items():
            for dep in svc.depends_on:
                assert first.index(dep) < first.index(name)

    def test_cycle_raises(self):
        stack = make_stack({"a": ["b"], "b": ["a"], "c": []})
        with pytest.raises(DependencyCycleError) as exc:
            DependencyResolver().resolve_order(stack)
        assert set(exc.value.cycle) == {"a", "b"}

    def test_subset_includes_dependencies(self):
        stack = make_stack({"db": [], "cache": [], "api": ["db"], "web": ["api"]})
        assert DependencyResolver().resolve_order(stack, only=["web"]) == ["db", "api", "web"]

    def test_teardown_is_reverse(self):
        stack = make_stack({"db": [], "api": ["db"]})
        assert DependencyResolver().teardown_order(stack) == ["api", "db"]

    def test_dependents_of(self):
        stack = make_stack({"db": [], "api": ["db"], "web": ["api"], "cron": []})
        assert DependencyResolver.dependents_of(stack, "db") == ["api", "web"]


def test_find_cycle_returns_closed_path():
    assert find_cycle({"a": {"b"}, "b": {"c"}, "c": {"a"}}) == ["a", "b", "c", "a"]
    assert find_cycle({"a": {"b"}, "b": set()}) is None
