"""Neo4j persistence for users, medications and schedules.

Graph shape
───────────
::

    (:User[:Elder|:Caretaker])-[:TAKES {schedule, pillsPerDose, days,
                                        frequency, dosage}]->(:Medication)
    (:User:Caretaker)-[:CARES_FOR]->(:User:Elder)
    (:User)-[:TOOK_MEDICATION {date, scheduledTime, actualTime, status}]->(:Medication)
    (:User)-[:HAS_CONVERSATION]->(:Conversation)

Conventions
───────────
* ``GraphStore`` owns one driver for the process.  It is constructed and
  ``init()``-ed by the FastAPI lifespan and ``close()``-d on shutdown;
  tests inject a fake driver instead.
* Every operation opens its own session in a ``with`` block and runs a
  managed read or write transaction, so sessions are always released.
* Not-found lookups return ``None`` / ``[]``.  Invalid schedules return
  ``None`` before any query runs.  Driver errors are logged and re-raised.
* Medication lookups all go through ``rank_medications``.
* A phone number identifies at most one user: ``create_user`` and
  ``update_user`` refuse a phone that already belongs to someone else.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any, TypeVar

from neo4j import Driver, GraphDatabase, ManagedTransaction
from neo4j.exceptions import DriverError, Neo4jError
from pydantic import ValidationError

from src.config import (
    NEO4J_CONNECTION_TIMEOUT_SECONDS,
    NEO4J_DATABASE,
    NEO4J_MAX_POOL_SIZE,
    NEO4J_PASSWORD,
    NEO4J_URI,
    NEO4J_USERNAME,
)
from src.services.schedule import MedicationSchedule, ScheduleEntry
from src.services.session_keys import mask_phone

logger = logging.getLogger(__name__)

T = TypeVar("T")

ROLES = ("Elder", "Caretaker")
INTAKE_STATUSES = ("taken", "missed", "pending")
USER_FIELDS = ("firstName", "lastName", "email", "phone", "age", "role", "sex", "language")

SEARCH_CANDIDATE_LIMIT = 200

# ── Medication search ranks (lower is better) ───────────────────────
RANK_EXACT_NAME = 0
RANK_NAME_PREFIX = 1
RANK_BRAND_PREFIX = 2
RANK_GENERIC_PREFIX = 3
RANK_SUBSTRING = 4


def match_rank(query: str, medication: Mapping[str, Any]) -> int | None:
    """Rank one medication against *query*, or ``None`` if it does not match."""
    q = query.strip().lower()
    if not q:
        return None
    name = (medication.get("Name") or "").lower()
    brand = (medication.get("brandName") or "").lower()
    generic = (medication.get("genericName") or "").lower()

    if name == q:
        return RANK_EXACT_NAME
    if name.startswith(q):
        return RANK_NAME_PREFIX
    if brand.startswith(q):
        return RANK_BRAND_PREFIX
    if generic.startswith(q):
        return RANK_GENERIC_PREFIX
    if q in name or q in brand or q in generic:
        return RANK_SUBSTRING
    return None


def rank_medications(
    query: str,
    candidates: list[Mapping[str, Any]],
    limit: int = 5,
) -> list[dict[str, Any]]:
    """Order *candidates* by match quality, then by name; drop non-matches."""
    ranked = []
    for candidate in candidates:
        rank = match_rank(query, candidate)
        if rank is not None:
            ranked.append((rank, (candidate.get("Name") or "").lower(), candidate))
    ranked.sort(key=lambda item: (item[0], item[1]))
    return [
        {
            "id": c.get("id"),
            "Name": c.get("Name"),
            "brandName": c.get("brandName") or "",
            "genericName": c.get("genericName") or "",
        }
        for _, _, c in ranked[:limit]
    ]


def _run(tx: ManagedTransaction, cypher: str, **params: Any) -> list[dict[str, Any]]:
    return [record.data() for record in tx.run(cypher, params)]


def _now_iso() -> str:
    return datetime.now(UTC).isoformat()


def _validate_schedule(schedule: MedicationSchedule | Mapping[str, Any]) -> MedicationSchedule | None:
    if isinstance(schedule, MedicationSchedule):
        return schedule
    try:
        return MedicationSchedule.model_validate(schedule)
    except ValidationError as exc:
        logger.error("Invalid schedule rejected: %s", exc.errors(include_url=False))
        return None


def _phone_taken(tx: ManagedTransaction, phone: str, user_id: str) -> bool:
    rows = _run(
        tx,
        "MATCH (u:User {phone: $phone}) WHERE u.id <> $userId RETURN count(u) AS n",
        phone=phone,
        userId=user_id,
    )
    return bool(rows and rows[0]["n"])


class GraphStore:
    """Query contract over the Poppa graph."""

    def __init__(
        self,
        uri: str | None = None,
        username: str | None = None,
        password: str | None = None,
        *,
        database: str | None = None,
        driver: Driver | None = None,
    ):
        self._uri = uri or NEO4J_URI
        self._auth = (username or NEO4J_USERNAME, password or NEO4J_PASSWORD)
        self._database = database or NEO4J_DATABASE
        self._driver = driver

    # ── Lifecycle ────────────────────────────────────────────────────

    def init(self) -> GraphStore:
        """Create the driver.  Connections are opened lazily by the pool."""
        if self._driver is None:
            logger.info("Initializing Neo4j driver for %s", self._uri)
            self._driver = GraphDatabase.driver(
                self._uri,
                auth=self._auth,
                max_connection_pool_size=NEO4J_MAX_POOL_SIZE,
                connection_timeout=NEO4J_CONNECTION_TIMEOUT_SECONDS,
            )
        return self

    def close(self) -> None:
        if self._driver is not None:
            self._driver.close()
            self._driver = None
            logger.info("Neo4j driver closed")

    def verify_connectivity(self) -> None:
        self._require_driver().verify_connectivity()

    def test_connection(self) -> bool:
        """Run ``RETURN 1``; ``False`` when the database is unreachable."""
        try:
            rows = self._read(lambda tx: _run(tx, "RETURN 1 AS test"))
        except (Neo4jError, DriverError, OSError):
            logger.exception("Neo4j connection test failed")
            return False
        return bool(rows) and rows[0]["test"] == 1

    def ensure_schema(self) -> None:
        statements = (
            "CREATE CONSTRAINT user_id_unique IF NOT EXISTS "
            "FOR (u:User) REQUIRE u.id IS UNIQUE",
            "CREATE CONSTRAINT medication_id_unique IF NOT EXISTS "
            "FOR (m:Medication) REQUIRE m.id IS UNIQUE",
            "CREATE INDEX user_phone IF NOT EXISTS FOR (u:User) ON (u.phone)",
        )
        with self._session() as session:
            for statement in statements:
                session.run(statement).consume()
        logger.info("Neo4j constraints and indexes ensured")

    # ── Internal helpers ─────────────────────────────────────────────

    def _require_driver(self) -> Driver:
        if self._driver is None:
            raise RuntimeError("GraphStore.init() must be called before use")
        return self._driver

    def _session(self):
        return self._require_driver().session(database=self._database)

    def _read(self, work: Callable[[ManagedTransaction], T]) -> T:
        with self._session() as session:
            return session.execute_read(work)

    def _write(self, work: Callable[[ManagedTransaction], T]) -> T:
        with self._session() as session:
            return session.execute_write(work)

    # ── Users ────────────────────────────────────────────────────────

    def create_user(
        self,
        user_id: str,
        *,
        first_name: str | None = None,
        last_name: str | None = None,
        emails: list[str] | None = None,
        phones: list[str] | None = None,
        age: int | None = None,
        role: str | None = None,
        sex: str | None = None,
        language: str | None = None,
    ) -> dict[str, Any] | None:
        """Create or replace the profile of *user_id*.

        The first email and phone are kept; a user created without a phone
        is flagged ``pendingPhoneUpdate`` until ``update_user`` sets one.
        Returns ``None`` when the phone already belongs to another user.
        """
        phone = (phones or [""])[0] or ""
        profile = {
            "id": user_id,
            "firstName": first_name or "",
            "lastName": last_name or "",
            "email": (emails or [""])[0] or "",
            "phone": phone,
            "createdAt": _now_iso(),
            "age": age,
            "role": role if role in ROLES else None,
            "sex": sex,
            "language": language or "en",
            "pendingPhoneUpdate": not phone,
        }
        label = f"SET u:{profile['role']}" if profile["role"] else ""
        cypher = f"""
            MERGE (u:User {{id: $userId}})
            REMOVE u:Elder:Caretaker
            {label}
            SET u = $profile
            RETURN u
        """

        def _create(tx: ManagedTransaction) -> dict[str, Any] | None:
            if phone and _phone_taken(tx, phone, user_id):
                logger.warning(
                    "Refusing to create user %s: phone %s belongs to another user",
                    user_id, mask_phone(phone),
                )
                return None
            rows = _run(tx, cypher, userId=user_id, profile=profile)
            return rows[0]["u"] if rows else None

        try:
            user = self._write(_create)
        except (Neo4jError, DriverError):
            logger.exception("Error creating user %s", user_id)
            raise
        if user is not None:
            logger.info("User %s saved (role=%s)", user_id, profile["role"])
        return user

    def get_user(self, user_id: str) -> dict[str, Any] | None:
        rows = self._read(
            lambda tx: _run(tx, "MATCH (u:User {id: $userId}) RETURN u", userId=user_id)
        )
        return rows[0]["u"] if rows else None

    def find_user_by_phone(self, phone: str) -> dict[str, Any] | None:
        if not phone:
            return None
        rows = self._read(
            lambda tx: _run(
                tx,
                "MATCH (u:User) WHERE u.phone = $phone "
                "RETURN u ORDER BY u.createdAt LIMIT 2",
                phone=phone,
            )
        )
        if len(rows) > 1:
            logger.warning("More than one user has phone %s; using the oldest", mask_phone(phone))
        return rows[0]["u"] if rows else None

    def update_user(self, user_id: str, updates: Mapping[str, Any]) -> dict[str, Any] | None:
        """Apply a partial profile update and relabel from the resulting role."""
        changes = {k: v for k, v in updates.items() if k in USER_FIELDS}
        if "role" in changes and changes["role"] not in ROLES:
            changes["role"] = None
        if "phone" in changes:
            changes["pendingPhoneUpdate"] = not changes["phone"]
        changes["updatedAt"] = _now_iso()

        cypher = """
            MATCH (u:User {id: $userId})
            SET u += $changes
            REMOVE u:Elder:Caretaker
            WITH u
            FOREACH (_ IN CASE WHEN u.role = 'Elder' THEN [1] ELSE [] END | SET u:Elder)
            FOREACH (_ IN CASE WHEN u.role = 'Caretaker' THEN [1] ELSE [] END | SET u:Caretaker)
            RETURN u
        """

        def _update(tx: ManagedTransaction) -> dict[str, Any] | None:
            phone = changes.get("phone")
            if phone and _phone_taken(tx, phone, user_id):
                logger.warning(
                    "Refusing phone update for %s: %s belongs to another user",
                    user_id, mask_phone(phone),
                )
                return None
            rows = _run(tx, cypher, userId=user_id, changes=changes)
            return rows[0]["u"] if rows else None

        try:
            return self._write(_update)
        except (Neo4jError, DriverError):
            logger.exception("Error updating user %s", user_id)
            raise

    def delete_user(self, user_id: str) -> bool:
        """Delete the user and every relationship touching it."""

        def _delete(tx: ManagedTransaction) -> bool:
            rows = _run(
                tx,
                "MATCH (u:User {id: $userId}) DETACH DELETE u RETURN count(*) AS deleted",
                userId=user_id,
            )
            return bool(rows and rows[0]["deleted"])

        try:
            return self._write(_delete)
        except (Neo4jError, DriverError):
            logger.exception("Error deleting user %s", user_id)
            raise

    # ── Care relationships ───────────────────────────────────────────

    def create_caretaker_relationship(self, caretaker_id: str, elder_id: str) -> bool:
        rows = self._write(
            lambda tx: _run(
                tx,
                """
                MATCH (c:User:Caretaker {id: $caretakerId})
                MATCH (e:User:Elder {id: $elderId})
                MERGE (c)-[r:CARES_FOR]->(e)
                ON CREATE SET r.createdAt = $createdAt
                RETURN count(r) AS linked
                """,
                caretakerId=caretaker_id,
                elderId=elder_id,
                createdAt=_now_iso(),
            )
        )
        return bool(rows and rows[0]["linked"])

    def get_caretaker_elders(self, caretaker_id: str) -> list[dict[str, Any]]:
        rows = self._read(
            lambda tx: _run(
                tx,
                "MATCH (:User:Caretaker {id: $caretakerId})-[:CARES_FOR]->(e:User:Elder) "
                "RETURN e ORDER BY e.firstName",
                caretakerId=caretaker_id,
            )
        )
        return [row["e"] for row in rows]

    # ── Medications ──────────────────────────────────────────────────

    @staticmethod
    def _search_candidates(tx: ManagedTransaction, query: str) -> list[dict[str, Any]]:
        return _run(
            tx,
            """
            MATCH (m:Medication)
            WHERE toLower(m.Name) CONTAINS $q
               OR toLower(coalesce(m.brandName, '')) CONTAINS $q
               OR toLower(coalesce(m.genericName, '')) CONTAINS $q
            RETURN m.id AS id, m.Name AS Name,
                   m.brandName AS brandName, m.genericName AS genericName
            LIMIT $candidateLimit
            """,
            q=query.strip().lower(),
            candidateLimit=SEARCH_CANDIDATE_LIMIT,
        )

    def search_medications(self, query: str, limit: int = 5) -> list[dict[str, Any]]:
        if not query or not query.strip():
            return []
        candidates = self._read(lambda tx: self._search_candidates(tx, query))
        return rank_medications(query, candidates, limit)

    def create_medication(
        self,
        name: str,
        *,
        brand_name: str | None = None,
        generic_name: str | None = None,
    ) -> dict[str, Any]:
        """Return the medication called *name*, creating it if needed.

        An existing medication is reused when its name matches exactly,
        ignoring case.
        """
        name = name.strip()
        if not name:
            raise ValueError("Medication name must not be empty")

        def _create(tx: ManagedTransaction) -> dict[str, Any]:
            ranked = rank_medications(name, self._search_candidates(tx, name), limit=1)
            if ranked and match_rank(name, ranked[0]) == RANK_EXACT_NAME:
                return ranked[0]
            rows = _run(
                tx,
                """
                MERGE (m:Medication {Name: $name})
                ON CREATE SET m.id = randomUUID(),
                              m.brandName = $brandName,
                              m.genericName = $genericName
                RETURN m.id AS id, m.Name AS Name,
                       m.brandName AS brandName, m.genericName AS genericName
                """,
                name=name,
                brandName=brand_name,
                genericName=generic_name,
            )
            return rows[0]

        try:
            medication = self._write(_create)
        except (Neo4jError, DriverError):
            logger.exception("Error creating medication %r", name)
            raise
        logger.info("Medication %r resolved to %s", name, medication["id"])
        return medication

    def link_user_to_medication(
        self,
        user_id: str,
        medication_id: str,
        schedule: MedicationSchedule | Mapping[str, Any],
    ) -> dict[str, Any] | None:
        """Create or overwrite the ``TAKES`` schedule between user and medication.

        Returns ``{"medication", "schedule"}``, or ``None`` when the
        schedule is invalid (no query is run) or either node is missing.
        """
        if not user_id or not medication_id:
            logger.error("link_user_to_medication needs both ids: %r, %r", user_id, medication_id)
            return None
        validated = _validate_schedule(schedule)
        if validated is None:
            return None

        def _link(tx: ManagedTransaction) -> dict[str, Any] | None:
            found = _run(
                tx,
                "MATCH (u:User {id: $userId}) MATCH (m:Medication {id: $medicationId}) "
                "RETURN u.id AS userId",
                userId=user_id,
                medicationId=medication_id,
            )
            if not found:
                logger.error("User %s or medication %s not found", user_id, medication_id)
                return None
            rows = _run(
                tx,
                """
                MATCH (u:User {id: $userId})
                MATCH (m:Medication {id: $medicationId})
                MERGE (u)-[r:TAKES]->(m)
                SET r += $schedule, r.updatedAt = $updatedAt
                RETURN m AS medication, properties(r) AS schedule
                """,
                userId=user_id,
                medicationId=medication_id,
                schedule=validated.to_properties(),
                updatedAt=_now_iso(),
            )
            return rows[0] if rows else None

        try:
            return self._write(_link)
        except (Neo4jError, DriverError):
            logger.exception("Error linking medication %s to user %s", medication_id, user_id)
            raise

    def update_medication_schedule(
        self,
        user_id: str,
        medication_id: str,
        schedule: MedicationSchedule | Mapping[str, Any],
    ) -> dict[str, Any] | None:
        """Overwrite an existing ``TAKES`` schedule wholesale."""
        validated = _validate_schedule(schedule)
        if validated is None:
            return None
        rows = self._write(
            lambda tx: _run(
                tx,
                """
                MATCH (:User {id: $userId})-[r:TAKES]->(m:Medication {id: $medicationId})
                SET r += $schedule, r.updatedAt = $updatedAt
                RETURN m AS medication, properties(r) AS schedule
                """,
                userId=user_id,
                medicationId=medication_id,
                schedule=validated.to_properties(),
                updatedAt=_now_iso(),
            )
        )
        return rows[0] if rows else None

    def get_user_medications(self, user_id: str) -> list[dict[str, Any]]:
        return self._read(
            lambda tx: _run(
                tx,
                "MATCH (:User {id: $userId})-[r:TAKES]->(m:Medication) "
                "RETURN m AS medication, properties(r) AS schedule ORDER BY m.Name",
                userId=user_id,
            )
        )

    def delete_medication_for_user(self, user_id: str, medication_id: str) -> bool:
        """Remove the schedule, the user's intake history for it, and the
        medication itself once nobody else takes it.
        """

        def _delete(tx: ManagedTransaction) -> bool:
            removed = _run(
                tx,
                "MATCH (:User {id: $userId})-[r:TAKES]->(:Medication {id: $medicationId}) "
                "DELETE r RETURN count(*) AS removed",
                userId=user_id,
                medicationId=medication_id,
            )
            if not removed or not removed[0]["removed"]:
                return False
            _run(
                tx,
                "MATCH (:User {id: $userId})-[h:TOOK_MEDICATION]->(:Medication {id: $medicationId}) "
                "DELETE h",
                userId=user_id,
                medicationId=medication_id,
            )
            _run(
                tx,
                "MATCH (m:Medication {id: $medicationId}) WHERE NOT (m)<-[:TAKES]-() "
                "DETACH DELETE m",
                medicationId=medication_id,
            )
            return True

        try:
            return self._write(_delete)
        except (Neo4jError, DriverError):
            logger.exception("Error deleting medication %s for user %s", medication_id, user_id)
            raise

    # ── Intake history ───────────────────────────────────────────────

    def record_medication_status(
        self,
        user_id: str,
        medication_id: str,
        date: str,
        scheduled_time: str,
        actual_time: str | None,
        status: str,
    ) -> bool:
        """Append one ``TOOK_MEDICATION`` record; ``False`` if it could not be written."""
        if status not in INTAKE_STATUSES:
            logger.error("Unknown intake status %r", status)
            return False
        try:
            rows = self._write(
                lambda tx: _run(
                    tx,
                    """
                    MATCH (u:User {id: $userId})
                    MATCH (m:Medication {id: $medicationId})
                    CREATE (u)-[t:TOOK_MEDICATION {
                      date: $date,
                      scheduledTime: $scheduledTime,
                      actualTime: $actualTime,
                      status: $status
                    }]->(m)
                    RETURN count(t) AS created
                    """,
                    userId=user_id,
                    medicationId=medication_id,
                    date=date,
                    scheduledTime=scheduled_time,
                    actualTime=actual_time,
                    status=status,
                )
            )
        except (Neo4jError, DriverError):
            logger.exception("Error recording medication status for user %s", user_id)
            return False
        return bool(rows and rows[0]["created"])

    def get_medication_history(self, user_id: str, limit: int = 30) -> list[dict[str, Any]]:
        return self._read(
            lambda tx: _run(
                tx,
                """
                MATCH (:User {id: $userId})-[t:TOOK_MEDICATION]->(m:Medication)
                RETURN m.id AS medicationId, m.Name AS medicationName,
                       t.date AS date, t.scheduledTime AS scheduledTime,
                       t.actualTime AS actualTime, t.status AS status
                ORDER BY t.date DESC, t.scheduledTime DESC
                LIMIT $limit
                """,
                userId=user_id,
                limit=limit,
            )
        )

    # ── Conversations (audit trail) ──────────────────────────────────

    def store_conversation(
        self,
        phone: str,
        message: str,
        *,
        is_template: bool = False,
        template_type: str | None = None,
        template_content: str | None = None,
        response: str | None = None,
        button_response: Mapping[str, Any] | None = None,
    ) -> dict[str, Any] | None:
        """Record one message in the audit trail of the user owning *phone*.

        *button_response* (``{"text", "payload"}``) is flattened into two
        properties since Neo4j cannot store maps.  Returns ``None`` when no
        user has that phone.
        """
        button = button_response or {}
        rows = self._write(
            lambda tx: _run(
                tx,
                """
                MATCH (u:User {phone: $phone})
                WITH u ORDER BY u.createdAt LIMIT 1
                CREATE (c:Conversation {
                  id: randomUUID(),
                  timestamp: $timestamp,
                  message: $message,
                  isTemplate: $isTemplate,
                  templateType: $templateType,
                  templateContent: $templateContent,
                  response: $response,
                  buttonText: $buttonText,
                  buttonPayload: $buttonPayload
                })
                CREATE (u)-[:HAS_CONVERSATION]->(c)
                RETURN c
                """,
                phone=phone,
                timestamp=_now_iso(),
                message=message or "",
                isTemplate=is_template,
                templateType=template_type,
                templateContent=template_content,
                response=response,
                buttonText=button.get("text"),
                buttonPayload=button.get("payload"),
            )
        )
        return rows[0]["c"] if rows else None

    def get_conversation_history(self, phone: str, limit: int = 10) -> list[dict[str, Any]]:
        """Most recent *limit* conversation entries, oldest first."""
        rows = self._read(
            lambda tx: _run(
                tx,
                """
                MATCH (:User {phone: $phone})-[:HAS_CONVERSATION]->(c:Conversation)
                RETURN c ORDER BY c.timestamp DESC LIMIT $limit
                """,
                phone=phone,
                limit=limit,
            )
        )
        return [row["c"] for row in reversed(rows)]

    def get_user_metadata(self, phone: str) -> dict[str, Any] | None:
        """Profile, care relationships and medications for the agent context."""
        rows = self._read(
            lambda tx: _run(
                tx,
                """
                MATCH (u:User {phone: $phone})
                WITH u ORDER BY u.createdAt LIMIT 1
                OPTIONAL MATCH (c:User:Caretaker)-[:CARES_FOR]->(u)
                OPTIONAL MATCH (u)-[:CARES_FOR]->(e:User:Elder)
                OPTIONAL MATCH (u)-[r:TAKES]->(m:Medication)
                RETURN u,
                       collect(DISTINCT {id: c.id, firstName: c.firstName,
                                         lastName: c.lastName, phone: c.phone}) AS caretakers,
                       collect(DISTINCT {id: e.id, firstName: e.firstName,
                                         lastName: e.lastName, phone: e.phone}) AS elders,
                       collect(DISTINCT {name: m.Name, schedule: r.schedule, days: r.days,
                                         pillsPerDose: r.pillsPerDose, dosage: r.dosage}) AS medications
                """,
                phone=phone,
            )
        )
        if not rows:
            return None

        row = rows[0]
        user = row["u"]
        return {
            "profile": {
                "id": user.get("id"),
                "firstName": user.get("firstName") or "",
                "lastName": user.get("lastName") or "",
                "role": user.get("role") or "",
                "age": user.get("age"),
                "sex": user.get("sex"),
                "phone": user.get("phone") or "",
                "email": user.get("email") or "",
                "language": user.get("language") or "en",
            },
            "relationships": {
                "caretakers": [c for c in row["caretakers"] if c.get("id") is not None],
                "elders": [e for e in row["elders"] if e.get("id") is not None],
            },
            "medications": [m for m in row["medications"] if m.get("name") is not None],
        }

    # ── Scheduling ───────────────────────────────────────────────────

    def list_schedule_entries(self) -> list[ScheduleEntry]:
        """Every ``(User)-[:TAKES]->(Medication)`` triple, for the resolvers."""
        rows = self._read(
            lambda tx: _run(
                tx,
                """
                MATCH (u:User)-[r:TAKES]->(m:Medication)
                RETURN u.id AS userId, u.firstName AS firstName, u.phone AS phone,
                       m.id AS medicationId, m.Name AS medicationName,
                       r.schedule AS schedule, r.pillsPerDose AS pillsPerDose,
                       r.days AS days
                """,
            )
        )
        return [
            ScheduleEntry(
                user_id=row["userId"],
                first_name=row.get("firstName") or "",
                phone=row.get("phone") or "",
                medication_id=row.get("medicationId") or "",
                medication_name=row.get("medicationName") or "",
                schedule=list(row.get("schedule") or []),
                pills_per_dose=list(row.get("pillsPerDose") or []),
                days=list(row.get("days") or []),
            )
            for row in rows
        ]
