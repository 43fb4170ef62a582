import pytest

from minilab.deploy.graph import Step, StepGraph, TargetSelector, compute_plan
from minilab.errors import ConfigurationError, CyclicDependencyError, UnknownDependencyError
from minilab.observers.dispatcher import EventBus
from minilab.observers.events import PlanComputed, PlanFailed


def _noop(ctx):
    return None


def _step(name, deps=(), **kw):
    return Step(name=name, action=_noop, check=lambda ctx: False, depends_on=deps, **kw)


def test_order_respects_dependencies_and_declaration_order():
    g = StepGraph([
        _step("c", deps=("b",)),
        _step("a"),
        _step("b", deps=("a",)),
        _step("d"),
    ])
    # whenever several steps are ready, the earliest declared goes first
    assert g.topological_order().names() == ["a", "b", "c", "d"]


def test_independent_steps_keep_declaration_order():
    g = StepGraph([_step("z"), _step("y"), _step("x")])
    assert g.topological_order().names() == ["z", "y", "x"]


def test_order_is_restartable():
    g = StepGraph([_step("a"), _step("b", deps=("a",)), _step("c", deps=("a",))])
    order = g.topological_order()
    first = [s.name for s in order]
    second = [s.name for s in order]
    assert first == second == ["a", "b", "c"]


def test_duplicate_step_rejected():
    g = StepGraph([_step("a")])
    with pytest.raises(ConfigurationError):
        g.add_step(_step("a"))


def test_self_dependency_is_a_cycle():
    with pytest.raises(CyclicDependencyError):
        StepGraph([_step("a", deps=("a",))])


def test_cycle_through_forward_reference_rejected_on_add():
    g = StepGraph()
    g.add_step(_step("a", deps=("c",)))     # forward reference is fine
    g.add_step(_step("b", deps=("a",)))
    with pytest.raises(CyclicDependencyError) as ei:
        g.add_step(_step("c", deps=("b",)))
    assert "c" in str(ei.value)
    assert "c" not in g


def test_unknown_dependency_reported_when_ordering():
    g = StepGraph([_step("a", deps=("missing",))])
    with pytest.raises(UnknownDependencyError) as ei:
        g.topological_order()
    assert "missing" in str(ei.value)
    assert isinstance(ei.value, ConfigurationError)


def test_accessors():
    g = StepGraph([_step("a"), _step("b", deps=["a"])])
    assert len(g) == 2
    assert g.names() == ["a", "b"]
    assert g.dependencies("b") == ("a",)
    assert g.get("a").name == "a"
    with pytest.raises(UnknownDependencyError):
        g.get("nope")


def test_step_is_immutable_and_normalizes_deps():
    s = _step("a", deps=["x", "y"])
    assert s.depends_on == ("x", "y")
    with pytest.raises(AttributeError):
        s.name = "b"


def test_target_selector_str():
    assert str(TargetSelector()) == "all"
    assert str(TargetSelector(roles=("head",), names=("compute1",))) == "role=head,node=compute1"


def test_compute_plan_emits_plan_computed():
    class Capture:
        def __init__(self): self.events = []
        def notify(self, ev): self.events.append(ev)

    cap = Capture()
    g = StepGraph([_step("b", deps=("a",)), _step("a")])
    ordered = compute_plan(g, bus=EventBus([cap]))
    assert [s.name for s in ordered] == ["a", "b"]
    pc = next(e for e in cap.events if isinstance(e, PlanComputed))
    assert pc.order == ["a", "b"]


def test_compute_plan_failure_emits_plan_failed():
    class Capture:
        def __init__(self): self.events = []
        def notify(self, ev): self.events.append(ev)

    cap = Capture()
    g = StepGraph([_step("x", deps=("missing",))])
    with pytest.raises(UnknownDependencyError):
        compute_plan(g, bus=EventBus([cap]))
    pf = next(e for e in cap.events if isinstance(e, PlanFailed))
    assert "missing" in pf.error
