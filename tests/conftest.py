import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.exc import IntegrityError

from timehug.api.dependencies import get_request_context
from timehug.context import RequestContext
from timehug.database import get_db
from timehug.main import app
from timehug.services import ledger

FAKE_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")
OTHER_USER_ID = uuid.UUID("00000000-0000-0000-0000-000000000002")

_GENERATION_COLUMNS = (
    "id", "user_id", "template_id", "status", "input_images", "output_image",
    "credits_charged", "prompt_used", "error_message", "processing_time_ms",
    "created_at", "updated_at",
)


def input_paths(user_id: uuid.UUID) -> tuple[str, str]:
    return f"{user_id}/recent_1700000000000.jpg", f"{user_id}/younger_1700000000001.jpg"


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------

class FakeResult:
    def __init__(self, rows):
        self._rows = list(rows)

    def fetchone(self):
        return self._rows[0] if self._rows else None

    def fetchall(self):
        return list(self._rows)


class FakeStore:
    """Tables shared by every FakeSession, like one Postgres database.

    Each statement runs without yielding, so the conditional balance update
    is atomic across concurrently scheduled sessions.
    """

    def __init__(self):
        self.profiles: dict[uuid.UUID, dict] = {}
        self.templates: list[dict] = []
        self.generations: dict[uuid.UUID, dict] = {}
        self.transactions: list[dict] = []
        self._failures: list[list] = []

    # -- seeding ------------------------------------------------------------

    def add_profile(self, user_id: uuid.UUID = FAKE_USER_ID, balance: int = 0) -> dict:
        profile = {"id": user_id, "credit_balance": balance}
        self.profiles[user_id] = profile
        return profile

    def add_template(
        self,
        slug: str = "hug-younger-self",
        name: str = "Hug Your Younger Self",
        cost: int = 1,
        prompt: str = "Adult from photo one hugging the child from photo two.",
        active: bool = True,
    ) -> dict:
        template = {
            "id": uuid.uuid4(),
            "slug": slug,
            "name": name,
            "description": f"{name} template",
            "prompt": prompt,
            "credit_cost": cost,
            "is_active": active,
        }
        self.templates.append(template)
        return template

    def add_generation(
        self,
        user_id: uuid.UUID = FAKE_USER_ID,
        status: str = "processing",
        credits_charged: int = 1,
        output_image: str | None = None,
        error_message: str | None = None,
        created_at: datetime | None = None,
        charged: bool = False,
    ) -> dict:
        now = created_at or datetime.now(timezone.utc)
        generation = {
            "id": uuid.uuid4(),
            "user_id": user_id,
            "template_id": self.templates[0]["id"] if self.templates else None,
            "status": status,
            "input_images": list(input_paths(user_id)),
            "output_image": output_image,
            "credits_charged": credits_charged,
            "prompt_used": "prompt",
            "error_message": error_message,
            "processing_time_ms": None,
            "created_at": now,
            "updated_at": now,
        }
        self.generations[generation["id"]] = generation
        if charged:
            self.transactions.append({
                "id": uuid.uuid4(),
                "user_id": user_id,
                "amount": -credits_charged,
                "type": "generation",
                "generation_id": generation["id"],
                "description": "Generation: seeded",
                "created_at": now,
            })
        return generation

    # -- inspection ---------------------------------------------------------

    def balance(self, user_id: uuid.UUID = FAKE_USER_ID) -> int:
        return self.profiles[user_id]["credit_balance"]

    def ledger(self, generation_id: uuid.UUID | None = None, txn_type: str | None = None) -> list[dict]:
        return [
            t for t in self.transactions
            if (generation_id is None or t["generation_id"] == generation_id)
            and (txn_type is None or t["type"] == txn_type)
        ]

    # -- fault injection ----------------------------------------------------

    def fail_on(self, fragment: str, exc: Exception, times: int = 1) -> None:
        """Raise *exc* from the next *times* statements containing *fragment*."""
        self._failures.append([fragment, exc, times])

    def _maybe_fail(self, sql: str) -> None:
        for failure in self._failures:
            fragment, exc, remaining = failure
            if remaining > 0 and fragment in sql:
                failure[2] -= 1
                raise exc


class FakeSession:
    """AsyncSession stand-in that speaks the SQL the services issue.

    Writes apply immediately and are undone on rollback.
    ``commit_failures`` maps a 1-based commit number to ``(exc, landed)``:
    the commit raises *exc*, and when *landed* is true its writes are kept.
    """

    def __init__(self, store: FakeStore):
        self.store = store
        self.commits = 0
        self.rollbacks = 0
        self.commit_failures: dict[int, tuple[Exception, bool]] = {}
        self.statements: list[str] = []
        self._undo: list = []

    async def execute(self, statement, params=None):
        await asyncio.sleep(0)
        sql = " ".join(str(statement).split())
        self.statements.append(sql)
        self.store._maybe_fail(sql)
        return FakeResult(self._route(sql, params or {}))

    async def commit(self):
        await asyncio.sleep(0)
        self.commits += 1
        failure = self.commit_failures.pop(self.commits, None)
        if failure is not None:
            exc, landed = failure
            if landed:
                self._undo.clear()
            raise exc
        self._undo.clear()

    async def rollback(self):
        self.rollbacks += 1
        while self._undo:
            self._undo.pop()()

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    async def close(self):
        pass

    # -- routing ------------------------------------------------------------

    def _adjust_balance(self, profile: dict, delta: int) -> int:
        profile["credit_balance"] += delta
        self._undo.append(lambda: profile.__setitem__("credit_balance", profile["credit_balance"] - delta))
        return profile["credit_balance"]

    def _update_generation(self, generation: dict, **changes) -> None:
        snapshot = dict(generation)
        generation.update(changes)

        def undo():
            generation.clear()
            generation.update(snapshot)

        self._undo.append(undo)

    def _route(self, sql: str, p: dict) -> list[tuple]:
        s = self.store

        # profiles
        if sql.startswith("INSERT INTO profiles"):
            if p["user_id"] not in s.profiles:
                s.add_profile(p["user_id"], balance=0)
                self._undo.append(lambda: s.profiles.pop(p["user_id"], None))
            return []
        if sql.startswith("SELECT credit_balance FROM profiles"):
            profile = s.profiles.get(p["user_id"])
            return [(profile["credit_balance"],)] if profile else []
        if sql.startswith("UPDATE profiles SET credit_balance = credit_balance - :amount"):
            profile = s.profiles.get(p["user_id"])
            if profile is None or profile["credit_balance"] < p["amount"]:
                return []
            return [(self._adjust_balance(profile, -p["amount"]),)]
        if sql.startswith("UPDATE profiles SET credit_balance = credit_balance + :amount"):
            profile = s.profiles.get(p["user_id"])
            if profile is None:
                return []
            return [(self._adjust_balance(profile, p["amount"]),)]

        # credit_transactions
        if sql.startswith("INSERT INTO credit_transactions"):
            if p["generation_id"] is not None and s.ledger(p["generation_id"], p["type"]):
                raise IntegrityError(sql, p, Exception("uq_credit_txn_generation_type"))
            row = dict(p)
            s.transactions.append(row)
            self._undo.append(lambda: s.transactions.remove(row))
            return []
        if sql.startswith("SELECT type FROM credit_transactions"):
            return [(t["type"],) for t in s.ledger(p["generation_id"])]
        if sql.startswith("SELECT id, amount, type, generation_id, description, created_at FROM credit_transactions"):
            rows = sorted(
                (t for t in s.transactions if t["user_id"] == p["user_id"]),
                key=lambda t: t["created_at"],
                reverse=True,
            )[: p["limit"]]
            return [
                (t["id"], t["amount"], t["type"], t["generation_id"], t["description"], t["created_at"])
                for t in rows
            ]

        # templates
        if sql.startswith("SELECT id, slug, name, description, prompt, credit_cost FROM templates"):
            if "id = :template_id" in sql:
                matches = [t for t in s.templates if t["id"] == p["template_id"]]
            else:
                matches = [t for t in s.templates if t["slug"] == p["slug"]]
            return [
                (t["id"], t["slug"], t["name"], t["description"], t["prompt"], t["credit_cost"])
                for t in matches if t["is_active"]
            ]
        if sql.startswith("SELECT id, slug, name, description, credit_cost FROM templates"):
            active = sorted(
                (t for t in s.templates if t["is_active"]),
                key=lambda t: (t["credit_cost"], t["name"]),
            )
            return [(t["id"], t["slug"], t["name"], t["description"], t["credit_cost"]) for t in active]

        # generations
        if sql.startswith("INSERT INTO generations"):
            if len(p["input_images"]) != 2:
                raise IntegrityError(sql, p, Exception("ck_generation_two_inputs"))
            row = {
                "id": p["id"],
                "user_id": p["user_id"],
                "template_id": p["template_id"],
                "status": "processing",
                "input_images": list(p["input_images"]),
                "output_image": None,
                "credits_charged": p["credits_charged"],
                "prompt_used": p["prompt_used"],
                "error_message": None,
                "processing_time_ms": None,
                "created_at": p["now"],
                "updated_at": p["now"],
            }
            s.generations[row["id"]] = row
            self._undo.append(lambda: s.generations.pop(row["id"], None))
            return []
        if sql.startswith("UPDATE generations SET status = 'completed'"):
            generation = s.generations.get(p["generation_id"])
            if generation is None or generation["status"] != "processing":
                return []
            self._update_generation(
                generation,
                status="completed",
                output_image=p["output_image"],
                processing_time_ms=p["processing_time_ms"],
                updated_at=p["now"],
            )
            return [(generation["user_id"], generation["credits_charged"])]
        if sql.startswith("UPDATE generations SET status = 'failed'"):
            generation = s.generations.get(p["generation_id"])
            if generation is None or generation["status"] != "processing":
                return []
            self._update_generation(
                generation,
                status="failed",
                error_message=p["error_message"],
                updated_at=p["now"],
            )
            return [(generation["user_id"], generation["credits_charged"])]
        if sql.startswith("SELECT status FROM generations"):
            generation = s.generations.get(p["generation_id"])
            return [(generation["status"],)] if generation else []
        if sql.startswith("SELECT output_image FROM generations"):
            generation = s.generations.get(p["generation_id"])
            return [(generation["output_image"],)] if generation else []
        if sql.startswith("SELECT id FROM generations WHERE status = 'processing'"):
            stale = sorted(
                (g for g in s.generations.values()
                 if g["status"] == "processing" and g["created_at"] < p["cutoff"]),
                key=lambda g: g["created_at"],
            )[: p["limit"]]
            return [(g["id"],) for g in stale]
        if sql.startswith("SELECT id, user_id, template_id, status, input_images"):
            if "id = :generation_id" in sql:
                matches = [
                    g for g in s.generations.values()
                    if g["id"] == p["generation_id"] and g["user_id"] == p["user_id"]
                ]
            else:
                matches = sorted(
                    (g for g in s.generations.values() if g["user_id"] == p["user_id"]),
                    key=lambda g: g["created_at"],
                    reverse=True,
                )
            return [tuple(g[c] for c in _GENERATION_COLUMNS) for g in matches]

        raise AssertionError(f"Unhandled SQL in FakeSession: {sql}")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def store():
    fake = FakeStore()
    fake.add_template()
    return fake


@pytest.fixture
def db(store):
    return FakeSession(store)


@pytest.fixture(autouse=True)
def fulfillment_sessions(store, monkeypatch):
    """Background fulfillment opens its own sessions on the same store."""
    sessions: list[FakeSession] = []

    def _factory():
        session = FakeSession(store)
        sessions.append(session)
        return session

    monkeypatch.setattr(ledger, "async_session_factory", _factory)
    return sessions


@pytest.fixture
def ctx():
    return RequestContext(user_id=FAKE_USER_ID, email="test@example.com")


@pytest.fixture
def stale_time():
    return datetime.now(timezone.utc) - timedelta(hours=2)


@pytest.fixture
async def client(store, ctx):
    """API client whose requests run against *store* as FAKE_USER_ID."""

    async def _override_get_db():
        yield FakeSession(store)

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_request_context] = lambda: ctx
    try:
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
async def anonymous_client():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
