from __future__ import annotations

from matrixci import guards
from matrixci.dsl import job, sh
from matrixci.guards import StepContext
from matrixci.trigger import TriggerContext


def ctx(reference=False, **trigger):
    j = job("x86_64", sh("Build", "true"), reference=reference)
    return StepContext(job=j, trigger=TriggerContext(**trigger), env={"SECRET": "x"})


def test_reference_only():
    assert guards.reference_only(ctx(reference=True))
    assert not guards.reference_only(ctx())
    assert guards.not_reference(ctx())


def test_trigger_guards():
    assert not guards.not_pull_request(ctx(pull_request=True))
    assert guards.tagged(ctx(tag="v5.0"))
    assert not guards.tagged(ctx(branch="development"))


def test_combinators_and_names():
    g = guards.all_of(guards.reference_only, guards.env_present("SECRET"))

    assert g(ctx(reference=True))
    assert not g(ctx())
    assert guards.any_of(guards.tagged, guards.reference_only)(ctx(reference=True))
    assert guards.negate(guards.tagged)(ctx())
    assert guards.describe(g) == "all_of(reference_only, env_present(SECRET))"
    assert guards.describe(None) == "always"
