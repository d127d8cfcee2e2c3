"""Tests for the charge sequence: create, debit with ledger row, fulfil."""

from __future__ import annotations

import asyncio
import uuid
from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from conftest import FAKE_USER_ID, OTHER_USER_ID, FakeSession, input_paths
from timehug.config import settings
from timehug.context import RequestContext
from timehug.exceptions import (
    CreditDeductionFailed,
    GenerationCreateFailed,
    InsufficientCredits,
    Timeout,
    ValidationError,
)
from timehug.integrations.generator_client import GeneratorConnectionError, SubmittedJob
from timehug.services.entitlement import check_entitlement
from timehug.services.generation_state import GenerationStatus
from timehug.services import ledger
from timehug.services.ledger import charge_generation, validate_inputs


def _inputs():
    return list(input_paths(FAKE_USER_ID))


def _db_error():
    return OperationalError("statement", {}, Exception("connection reset"))


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

def test_validate_inputs_requires_both_paths(ctx):
    recent, _ = input_paths(FAKE_USER_ID)

    with pytest.raises(ValidationError) as exc_info:
        validate_inputs(ctx, recent, None)

    assert exc_info.value.message == "Both recent and younger image paths are required"
    assert exc_info.value.status_code == 400


def test_validate_inputs_rejects_foreign_paths(ctx):
    recent, _ = input_paths(FAKE_USER_ID)
    _, foreign = input_paths(OTHER_USER_ID)

    with pytest.raises(ValidationError):
        validate_inputs(ctx, recent, foreign)


def test_validate_inputs_keeps_recent_then_younger(ctx):
    recent, younger = input_paths(FAKE_USER_ID)

    assert validate_inputs(ctx, recent, younger) == [recent, younger]


# ---------------------------------------------------------------------------
# Successful charge
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_charge_completes_and_writes_one_ledger_row(db, store, ctx):
    store.add_profile(FAKE_USER_ID, balance=3)
    entitlement = await check_entitlement(db, ctx)

    result = await charge_generation(db, ctx, _inputs(), entitlement)

    assert result.status == GenerationStatus.COMPLETED
    assert result.new_balance == 2
    assert store.balance() == 2

    generation = store.generations[result.generation_id]
    assert generation["status"] == "completed"
    assert generation["input_images"] == _inputs()
    assert generation["credits_charged"] == 1
    assert generation["prompt_used"] == store.templates[0]["prompt"]
    assert generation["output_image"].startswith(f"{FAKE_USER_ID}/output_")
    assert generation["output_image"].endswith(".png")
    assert generation["error_message"] is None
    assert generation["processing_time_ms"] >= 0

    charges = store.ledger(result.generation_id)
    assert len(charges) == 1
    assert charges[0]["type"] == "generation"
    assert charges[0]["amount"] == -1
    assert charges[0]["user_id"] == FAKE_USER_ID
    assert charges[0]["description"] == "Generation: Hug Your Younger Self"

    assert result.output_url == (
        f"{settings.STORAGE_URL}/storage/v1/object/public/"
        f"{settings.STORAGE_BUCKET}/{generation['output_image']}"
    )


@pytest.mark.asyncio
async def test_cost_is_snapshotted_at_charge_time(db, store, ctx):
    store.add_profile(FAKE_USER_ID, balance=10)
    entitlement = await check_entitlement(db, ctx)

    result = await charge_generation(db, ctx, _inputs(), entitlement)
    store.templates[0]["credit_cost"] = 7

    assert store.generations[result.generation_id]["credits_charged"] == 1
    assert store.ledger(result.generation_id)[0]["amount"] == -1


@pytest.mark.asyncio
async def test_zero_cost_template_charges_nothing(db, store, ctx):
    store.add_profile(FAKE_USER_ID, balance=0)
    free = store.add_template(slug="free", name="Free", cost=0)
    entitlement = await check_entitlement(db, ctx, str(free["id"]))

    result = await charge_generation(db, ctx, _inputs(), entitlement)

    assert result.status == GenerationStatus.COMPLETED
    assert store.balance() == 0
    assert store.ledger(result.generation_id)[0]["amount"] == 0


@pytest.mark.asyncio
async def test_free_template_without_profile_completes(db, store, ctx):
    free = store.add_template(slug="free", name="Free", cost=0)
    entitlement = await check_entitlement(db, ctx, str(free["id"]))

    result = await charge_generation(db, ctx, _inputs(), entitlement)

    assert result.status == GenerationStatus.COMPLETED
    assert result.new_balance == 0
    assert store.balance() == 0
    (charge,) = store.ledger(result.generation_id)
    assert charge["amount"] == 0


# ---------------------------------------------------------------------------
# Refusals and failures
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_balance_spent_after_entitlement_fails_the_generation(db, store, ctx):
    store.add_profile(FAKE_USER_ID, balance=1)
    entitlement = await check_entitlement(db, ctx)
    store.profiles[FAKE_USER_ID]["credit_balance"] = 0

    with pytest.raises(InsufficientCredits) as exc_info:
        await charge_generation(db, ctx, _inputs(), entitlement)

    assert exc_info.value.required == 1
    assert exc_info.value.available == 0
    assert store.balance() == 0
    assert store.transactions == []
    (generation,) = store.generations.values()
    assert generation["status"] == "failed"
    assert generation["error_message"] == "Insufficient credits"


@pytest.mark.asyncio
async def test_create_failure_charges_nothing(db, store, ctx):
    store.add_profile(FAKE_USER_ID, balance=2)
    entitlement = await check_entitlement(db, ctx)
    store.fail_on("INSERT INTO generations", _db_error())

    with pytest.raises(GenerationCreateFailed) as exc_info:
        await charge_generation(db, ctx, _inputs(), entitlement)

    assert exc_info.value.status_code == 500
    assert exc_info.value.message == "Failed to create generation"
    assert store.balance() == 2
    assert store.generations == {}
    assert store.transactions == []


@pytest.mark.asyncio
async def test_ledger_write_failure_rolls_back_the_debit(db, store, ctx):
    store.add_profile(FAKE_USER_ID, balance=2)
    entitlement = await check_entitlement(db, ctx)
    store.fail_on("INSERT INTO credit_transactions", _db_error())

    with pytest.raises(CreditDeductionFailed) as exc_info:
        await charge_generation(db, ctx, _inputs(), entitlement)

    assert exc_info.value.message == "Failed to process credits"
    assert store.balance() == 2
    assert store.transactions == []
    (generation,) = store.generations.values()
    assert generation["status"] == "failed"
    assert generation["error_message"] == "Failed to process credits"


@pytest.mark.asyncio
async def test_timeout_after_charge_committed_is_refunded(db, store, ctx):
    store.add_profile(FAKE_USER_ID, balance=2)
    entitlement = await check_entitlement(db, ctx)
    # Commit 1 persists the generation; commit 2 is the debit.
    db.commit_failures[2] = (Timeout(), True)

    with pytest.raises(CreditDeductionFailed):
        await charge_generation(db, ctx, _inputs(), entitlement)

    (generation,) = store.generations.values()
    assert generation["status"] == "failed"
    assert store.balance() == 2
    rows = store.ledger(generation["id"])
    assert sorted((r["type"], r["amount"]) for r in rows) == [("generation", -1), ("refund", 1)]


@pytest.mark.asyncio
async def test_timeout_before_charge_committed_needs_no_refund(db, store, ctx):
    store.add_profile(FAKE_USER_ID, balance=2)
    entitlement = await check_entitlement(db, ctx)
    db.commit_failures[2] = (Timeout(), False)

    with pytest.raises(CreditDeductionFailed):
        await charge_generation(db, ctx, _inputs(), entitlement)

    assert store.balance() == 2
    assert store.transactions == []


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_concurrent_charges_never_overdraw(store, ctx):
    store.add_profile(FAKE_USER_ID, balance=1)
    sessions = [FakeSession(store) for _ in range(5)]
    entitlements = [await check_entitlement(s, ctx) for s in sessions]

    outcomes = await asyncio.gather(
        *(charge_generation(s, ctx, _inputs(), e) for s, e in zip(sessions, entitlements)),
        return_exceptions=True,
    )

    successes = [o for o in outcomes if not isinstance(o, BaseException)]
    refusals = [o for o in outcomes if isinstance(o, InsufficientCredits)]
    assert len(successes) == 1
    assert len(refusals) == 4
    assert store.balance() == 0
    assert len(store.ledger(txn_type="generation")) == 1

    statuses = sorted(g["status"] for g in store.generations.values())
    assert statuses == ["completed", "failed", "failed", "failed", "failed"]


@pytest.mark.asyncio
async def test_concurrent_charges_within_balance_all_succeed(store, ctx):
    store.add_profile(FAKE_USER_ID, balance=3)
    sessions = [FakeSession(store) for _ in range(3)]
    entitlements = [await check_entitlement(s, ctx) for s in sessions]

    results = await asyncio.gather(
        *(charge_generation(s, ctx, _inputs(), e) for s, e in zip(sessions, entitlements)),
    )

    assert len({r.generation_id for r in results}) == 3
    assert sorted(r.new_balance for r in results) == [0, 1, 2]
    assert store.balance() == 0


@pytest.mark.asyncio
async def test_other_users_balance_is_untouched(db, store, ctx):
    store.add_profile(FAKE_USER_ID, balance=1)
    store.add_profile(OTHER_USER_ID, balance=5)
    entitlement = await check_entitlement(db, ctx)

    await charge_generation(db, ctx, _inputs(), entitlement)

    assert store.balance(OTHER_USER_ID) == 5


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

class _GatedSession(FakeSession):
    """Session whose statements wait until *gate* opens."""

    def __init__(self, store, entered: asyncio.Event, gate: asyncio.Event):
        super().__init__(store)
        self.entered = entered
        self.gate = gate

    async def execute(self, statement, params=None):
        self.entered.set()
        await self.gate.wait()
        return await super().execute(statement, params)


@pytest.mark.asyncio
async def test_fulfillment_runs_on_its_own_session(db, store, ctx, fulfillment_sessions):
    store.add_profile(FAKE_USER_ID, balance=1)
    entitlement = await check_entitlement(db, ctx)

    await charge_generation(db, ctx, _inputs(), entitlement)

    assert db.commits == 2
    (session,) = fulfillment_sessions
    assert session.commits == 1


@pytest.mark.asyncio
async def test_cancelled_request_still_completes_charged_generation(db, store, ctx):
    store.add_profile(FAKE_USER_ID, balance=1)
    entitlement = await check_entitlement(db, ctx)
    entered, gate = asyncio.Event(), asyncio.Event()

    request = asyncio.ensure_future(charge_generation(
        db, ctx, _inputs(), entitlement,
        session_factory=lambda: _GatedSession(store, entered, gate),
    ))
    await entered.wait()
    request.cancel()
    with pytest.raises(asyncio.CancelledError):
        await request

    pending = list(ledger.background_fulfillments)
    assert len(pending) == 1
    gate.set()
    await asyncio.gather(*pending)

    (generation,) = store.generations.values()
    assert generation["status"] == "completed"
    assert generation["output_image"].startswith(f"{FAKE_USER_ID}/output_")
    assert store.balance() == 0
    assert len(store.ledger(generation["id"], "generation")) == 1
    assert store.ledger(generation["id"], "refund") == []


# ---------------------------------------------------------------------------
# Async fulfillment
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_async_mode_leaves_generation_processing(db, store, ctx, monkeypatch):
    monkeypatch.setattr(settings, "FULFILLMENT_MODE", "async")
    store.add_profile(FAKE_USER_ID, balance=1)
    entitlement = await check_entitlement(db, ctx)
    generator = AsyncMock()
    generator.submit.return_value = SubmittedJob(job_id="job-1")

    result = await charge_generation(db, ctx, _inputs(), entitlement, generator=generator)

    assert result.status == GenerationStatus.PROCESSING
    assert result.output_url is None
    assert store.generations[result.generation_id]["status"] == "processing"
    assert len(store.ledger(result.generation_id, "generation")) == 1

    job = generator.submit.await_args.args[0]
    assert job.generation_id == str(result.generation_id)
    assert job.prompt == store.templates[0]["prompt"]
    assert all(url.startswith(settings.STORAGE_URL) for url in job.input_urls)
    assert job.callback_url.endswith("/api/webhooks/generation")


@pytest.mark.asyncio
async def test_async_dispatch_failure_refunds(db, store, ctx, monkeypatch):
    monkeypatch.setattr(settings, "FULFILLMENT_MODE", "async")
    store.add_profile(FAKE_USER_ID, balance=1)
    entitlement = await check_entitlement(db, ctx)
    generator = AsyncMock()
    generator.submit.side_effect = GeneratorConnectionError("unreachable")

    result = await charge_generation(db, ctx, _inputs(), entitlement, generator=generator)

    assert result.status == GenerationStatus.FAILED
    assert store.balance() == 1
    assert store.generations[result.generation_id]["error_message"] == "Image generation service unavailable"
    assert len(store.ledger(result.generation_id, "refund")) == 1


@pytest.mark.asyncio
async def test_charge_uses_callers_identity_only(db, store):
    store.add_profile(OTHER_USER_ID, balance=1)
    other_ctx = RequestContext(user_id=OTHER_USER_ID)
    entitlement = await check_entitlement(db, other_ctx)

    result = await charge_generation(db, other_ctx, list(input_paths(OTHER_USER_ID)), entitlement)

    assert store.generations[result.generation_id]["user_id"] == OTHER_USER_ID
    assert isinstance(result.generation_id, uuid.UUID)
