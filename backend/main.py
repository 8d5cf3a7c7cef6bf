from __future__ import annotations

import asyncio
import base64
from contextlib import aclosing, contextmanager
import hashlib
import hmac
import itertools
import json
import logging
import math
import os
import re
import secrets
import smtplib
import threading
import time
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage
from enum import Enum
from typing import (
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
)
import uuid

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
import httpx
import pymysql
from pydantic import BaseModel, Field
from starlette.exceptions import HTTPException as StarletteHTTPException

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
FRONTEND_ORIGIN = os.getenv("FRONTEND_ORIGIN", "http://localhost:5173")
APP_BASE_URL = os.getenv("APP_BASE_URL", "http://localhost:5173")
AUTH_SECRET = os.getenv("AUTH_SECRET", "dev-secret-change-me")
AUTH_TOKEN_TTL_MINUTES = int(os.getenv("AUTH_TOKEN_TTL_MINUTES", str(60 * 24 * 30)))
RESET_TOKEN_TTL_MINUTES = int(os.getenv("RESET_TOKEN_TTL_MINUTES", "30"))
STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "mysql").lower()
MYSQL_HOST = os.getenv("MYSQL_HOST", "localhost")
MYSQL_PORT = int(os.getenv("MYSQL_PORT", "3306"))
MYSQL_USER = os.getenv("MYSQL_USER", "dreamshell")
MYSQL_PASSWORD = os.getenv("MYSQL_PASSWORD", "dreamshell_password")
MYSQL_DATABASE = os.getenv("MYSQL_DATABASE", "dreamshell")
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1")
OPENAI_MODEL = os.getenv("OPENAI_MODEL", "gpt-4o-mini")
OPENAI_TEMPERATURE = float(os.getenv("OPENAI_TEMPERATURE", "0.9"))
LLM_REQUEST_TIMEOUT_SECONDS = float(os.getenv("LLM_REQUEST_TIMEOUT_SECONDS", "30"))
STREAM_MAX_SECONDS = float(os.getenv("STREAM_MAX_SECONDS", "120"))
PROMPT_TEMPLATE_VARIANT = os.getenv("PROMPT_TEMPLATE_VARIANT", "companion").lower()
SENTIMENT_POLICY = os.getenv("SENTIMENT_POLICY", "lexicon").lower()
RELATED_CANDIDATE_LIMIT = int(os.getenv("RELATED_CANDIDATE_LIMIT", "20"))
PERSONA_HISTORY_LIMIT = int(os.getenv("PERSONA_HISTORY_LIMIT", "7"))
ENTRY_LIST_DEFAULT_LIMIT = 100
ENTRY_LIST_MAX_LIMIT = 200
SMTP_HOST = os.getenv("SMTP_HOST")
SMTP_PORT = int(os.getenv("SMTP_PORT", "587"))
SMTP_USER = os.getenv("SMTP_USER")
SMTP_PASSWORD = os.getenv("SMTP_PASSWORD")
MAIL_FROM = os.getenv("MAIL_FROM", "Dreamshell <no-reply@dreamshell>")

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
LOGGER = logging.getLogger("dreamshell")
STARTED_AT = time.monotonic()

app = FastAPI(title="Dreamshell Backend", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=[FRONTEND_ORIGIN],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class JournalError(Exception):
    status_code = 500


class ValidationError(JournalError):
    status_code = 400


class PersistenceError(JournalError):
    status_code = 500


class UpstreamLLMError(JournalError):
    status_code = 502


class PersonaTraits(BaseModel):
    curiosity: float = Field(..., ge=0.0, le=1.0)
    empathy: float = Field(..., ge=0.0, le=1.0)
    rigor: float = Field(..., ge=0.0, le=1.0)
    mystique: float = Field(..., ge=0.0, le=1.0)
    challenge_rate: float = Field(..., ge=0.0, le=1.0)


class PersonaState(BaseModel):
    user_id: str
    version: int = 1
    traits: PersonaTraits
    last_updated: datetime


class Entry(BaseModel):
    id: int
    user_id: str
    created_at: datetime
    text: str
    sentiment: float = Field(..., ge=-1.0, le=1.0)
    keywords: List[str] = Field(default_factory=list)


class MatchResult(BaseModel):
    entry: Entry
    score: float
    keyword_match: float
    sentiment_match: float
    time_relevance: float


class GoalState(BaseModel):
    primary_focus: str
    action_readiness: float = Field(..., ge=0.0, le=1.0)
    sentiment: float = Field(..., ge=-1.0, le=1.0)
    top_goals: List[str] = Field(default_factory=list)


class IngestResult(BaseModel):
    entry: Entry
    persona: Optional[PersonaState] = None
    related: Optional[Entry] = None
    mode: str
    warnings: List[str] = Field(default_factory=list)


class PromptPair(BaseModel):
    system: str
    user: str


class EntryCreateRequest(BaseModel):
    text: Optional[str] = None
    mode: Optional[str] = None


class EntryCreateResponse(BaseModel):
    entry: Entry
    persona: Optional[PersonaState] = None
    related: Optional[Entry] = None
    mode: str
    reply: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)


class EntryListResponse(BaseModel):
    entries: List[Entry]


class UserRecord(BaseModel):
    user_id: str
    email: str
    password_hash: str
    verified: bool = False
    created_at: datetime
    verify_token: Optional[str] = None
    reset_token: Optional[str] = None
    reset_expires: Optional[datetime] = None


class UserProfile(BaseModel):
    user_id: str
    email: str
    verified: bool = False
    created_at: datetime


class AuthRegisterRequest(BaseModel):
    email: str
    password: str


class AuthLoginRequest(BaseModel):
    email: str
    password: str


class AuthVerifyRequest(BaseModel):
    email: str
    token: str


class AuthForgotRequest(BaseModel):
    email: str


class AuthResetRequest(BaseModel):
    email: str
    token: str
    password: str


class AuthRegisterResponse(BaseModel):
    token: str
    user: UserProfile
    expires_at: datetime
    needs_verification: bool = True


class AuthLoginResponse(BaseModel):
    token: str
    user: UserProfile
    expires_at: datetime
    verified: bool


class AuthMeResponse(BaseModel):
    user: UserProfile


class OkResponse(BaseModel):
    ok: bool = True


DEFAULT_PERSONA_TRAITS = PersonaTraits(
    curiosity=0.6,
    empathy=0.7,
    rigor=0.6,
    mystique=0.7,
    challenge_rate=0.35,
)


def _clamp(value: float, min_value: float = 0.0, max_value: float = 1.0) -> float:
    return max(min_value, min(max_value, value))


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_db_datetime(value: datetime) -> datetime:
    return _as_utc(value).replace(tzinfo=None)


TRAIT_NAMES = ("curiosity", "empathy", "rigor", "mystique", "challenge_rate")


def _traits_payload(traits: PersonaTraits) -> Dict[str, float]:
    return {name: float(getattr(traits, name)) for name in TRAIT_NAMES}


# ---------------------------------------------------------------------------
# Text analysis
# ---------------------------------------------------------------------------

KEYWORD_LIMIT = 12
STOPWORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "but", "if", "in", "on", "at", "for",
        "with", "to", "of", "is", "are", "be", "am", "i", "you", "he", "she",
        "it", "we", "they", "me", "my", "your", "our", "their", "this", "that",
    }
)
POSITIVE_TERMS = (
    "good",
    "great",
    "happy",
    "grateful",
    "gratitude",
    "thankful",
    "calm",
    "progress",
    "love",
    "joy",
    "hopeful",
    "proud",
    "excited",
    "peace",
    "relief",
    "relieved",
    "confident",
    "glad",
    "better",
)
NEGATIVE_TERMS = (
    "sad",
    "lost",
    "anxious",
    "anxiety",
    "stress",
    "worry",
    "worried",
    "fear",
    "afraid",
    "tired",
    "angry",
    "upset",
    "stuck",
    "overwhelm",
    "doubt",
    "lonely",
    "hurt",
    "confused",
    "hopeless",
    "bad",
)
SENTIMENT_NORMALIZER = 3.0
GOAL_STATES: Dict[str, Tuple[str, ...]] = {
    "action": ("do", "start", "begin", "create", "make", "build", "work", "implement", "execute", "launch"),
    "progress": ("improve", "grow", "develop", "advance", "achieve", "complete", "finish", "accomplish"),
    "learning": ("learn", "study", "practice", "understand", "master", "explore", "research", "analyze"),
    "skills": ("code", "program", "design", "write", "teach", "lead", "manage", "solve"),
    "planning": ("plan", "organize", "structure", "prepare", "arrange", "schedule", "coordinate"),
    "goals": ("goal", "target", "objective", "milestone", "outcome", "result", "success"),
    "motivation": ("motivated", "determined", "focused", "committed", "dedicated", "passionate"),
    "confidence": ("can", "will", "able", "capable", "ready", "confident", "sure", "certain"),
    "challenges": ("challenge", "problem", "obstacle", "difficulty", "barrier", "issue"),
    "growth": ("opportunity", "potential", "possibility", "prospect", "chance", "opening"),
}
GOAL_ACTION_STATES = ("action", "progress", "planning", "goals")
GOAL_POSITIVE_STATES = ("progress", "confidence", "motivation", "growth")
GOAL_NEGATIVE_STATES = ("challenges",)
GOAL_SENTIMENT_NORMALIZER = 5.0
SENTIMENT_POLICIES = ("lexicon", "goal_state")

if SENTIMENT_POLICY not in SENTIMENT_POLICIES:
    raise ValueError(
        f"SENTIMENT_POLICY must be one of {SENTIMENT_POLICIES}, got {SENTIMENT_POLICY!r}."
    )


def extract_keywords(text: str, limit: int = KEYWORD_LIMIT) -> List[str]:
    normalized = re.sub(r"[^a-z0-9]+", " ", (text or "").lower())
    keywords: List[str] = []
    seen: set[str] = set()
    for token in normalized.split():
        if len(token) <= 2 or token in STOPWORDS or token in seen:
            continue
        seen.add(token)
        keywords.append(token)
        if len(keywords) >= limit:
            break
    return keywords


def _term_hits(text: str, terms: Iterable[str]) -> int:
    return sum(1 for term in terms if term in text)


def _word_hits(text: str, words: Iterable[str]) -> int:
    hits = 0
    for word in words:
        hits += len(re.findall(rf"\b{re.escape(word)}\b", text))
    return hits


def analyze_goal_state(text: str) -> GoalState:
    lowered = (text or "").lower()
    scores = {state: _word_hits(lowered, words) for state, words in GOAL_STATES.items()}
    ranked = sorted(scores, key=lambda state: scores[state], reverse=True)
    max_action_score = len(GOAL_ACTION_STATES) * 3
    action_readiness = min(
        1.0, sum(scores[state] for state in GOAL_ACTION_STATES) / max_action_score
    )
    positive = sum(scores[state] for state in GOAL_POSITIVE_STATES)
    negative = sum(scores[state] for state in GOAL_NEGATIVE_STATES)
    return GoalState(
        primary_focus=ranked[0],
        action_readiness=action_readiness,
        sentiment=_clamp((positive - negative) / GOAL_SENTIMENT_NORMALIZER, -1.0, 1.0),
        top_goals=ranked[:3],
    )


def score_sentiment(text: str, policy: Optional[str] = None) -> float:
    resolved = policy or SENTIMENT_POLICY
    if resolved == "goal_state":
        return analyze_goal_state(text).sentiment
    if resolved != "lexicon":
        raise ValueError(f"Unknown sentiment policy {resolved!r}.")
    lowered = (text or "").lower()
    raw = _term_hits(lowered, POSITIVE_TERMS) - _term_hits(lowered, NEGATIVE_TERMS)
    return _clamp(raw / SENTIMENT_NORMALIZER, -1.0, 1.0)


# ---------------------------------------------------------------------------
# Related-entry scoring
# ---------------------------------------------------------------------------

KEYWORD_MATCH_WEIGHT = 0.5
SENTIMENT_MATCH_WEIGHT = 0.3
TIME_RELEVANCE_WEIGHT = 0.2
TIME_DECAY_HOURS = 24 * 7


def keyword_overlap(current: Sequence[str], candidate: Sequence[str]) -> float:
    current_set = set(current)
    candidate_set = set(candidate)
    denominator = max(len(current_set), len(candidate_set))
    if denominator == 0:
        return 0.0
    return len(current_set & candidate_set) / denominator


def sentiment_similarity(current: float, candidate: float) -> float:
    return _clamp(1.0 - abs(current - candidate))


def time_relevance(current: datetime, candidate: datetime) -> float:
    hours = abs((_as_utc(current) - _as_utc(candidate)).total_seconds()) / 3600.0
    return math.exp(-hours / TIME_DECAY_HOURS)


def score_entry_match(current: Entry, candidate: Entry) -> MatchResult:
    keyword_match = keyword_overlap(current.keywords, candidate.keywords)
    sentiment_match = sentiment_similarity(current.sentiment, candidate.sentiment)
    recency = time_relevance(current.created_at, candidate.created_at)
    score = (
        KEYWORD_MATCH_WEIGHT * keyword_match
        + SENTIMENT_MATCH_WEIGHT * sentiment_match
        + TIME_RELEVANCE_WEIGHT * recency
    )
    return MatchResult(
        entry=candidate,
        score=score,
        keyword_match=keyword_match,
        sentiment_match=sentiment_match,
        time_relevance=recency,
    )


def find_related_entries(
    current: Entry,
    candidates: Iterable[Entry],
    limit: int = 3,
) -> List[MatchResult]:
    if limit <= 0:
        return []
    matches = [score_entry_match(current, candidate) for candidate in candidates]
    # newest candidate wins a tie
    matches.sort(
        key=lambda match: (
            -match.score,
            -_as_utc(match.entry.created_at).timestamp(),
            -match.entry.id,
        )
    )
    return matches[:limit]


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------


class JournalStore:
    """Persistence contract for users, entries and persona rows.

    Every method raises ``PersistenceError`` when the backing store fails.
    """

    def ensure_schema(self) -> None:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError

    def create_user(
        self, email: str, password_hash: str, verify_token: Optional[str]
    ) -> UserRecord:
        raise NotImplementedError

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        raise NotImplementedError

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        raise NotImplementedError

    def mark_verified(self, email: str, token: str) -> bool:
        raise NotImplementedError

    def set_reset_token(self, email: str, token: str, expires_at: datetime) -> bool:
        raise NotImplementedError

    def reset_password(
        self, email: str, token: str, password_hash: str, now: datetime
    ) -> bool:
        raise NotImplementedError

    def insert_entry(
        self,
        user_id: str,
        created_at: datetime,
        text: str,
        sentiment: float,
        keywords: Sequence[str],
    ) -> Entry:
        raise NotImplementedError

    def list_recent_entries(
        self,
        user_id: str,
        exclude_id: Optional[int] = None,
        limit: int = RELATED_CANDIDATE_LIMIT,
    ) -> List[Entry]:
        raise NotImplementedError

    def get_persona(self, user_id: str) -> Optional[PersonaState]:
        raise NotImplementedError

    def upsert_persona(
        self, user_id: str, traits: PersonaTraits, updated_at: datetime
    ) -> PersonaState:
        raise NotImplementedError

    def create_default_persona(
        self,
        user_id: str,
        traits: PersonaTraits = DEFAULT_PERSONA_TRAITS,
        created_at: Optional[datetime] = None,
    ) -> None:
        raise NotImplementedError


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id CHAR(32) PRIMARY KEY,
        email VARCHAR(255) NOT NULL UNIQUE,
        password_hash VARCHAR(255) NOT NULL,
        verified TINYINT(1) NOT NULL DEFAULT 0,
        verify_token VARCHAR(64) NULL,
        reset_token VARCHAR(64) NULL,
        reset_expires DATETIME(6) NULL,
        created_at DATETIME(6) NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS persona (
        user_id CHAR(32) PRIMARY KEY,
        version INT NOT NULL DEFAULT 1,
        traits TEXT NOT NULL,
        last_updated DATETIME(6) NOT NULL,
        CONSTRAINT fk_persona_user FOREIGN KEY (user_id)
            REFERENCES users(id) ON DELETE CASCADE
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS entries (
        id BIGINT AUTO_INCREMENT PRIMARY KEY,
        user_id CHAR(32) NOT NULL,
        created_at DATETIME(6) NOT NULL,
        text TEXT NOT NULL,
        sentiment DOUBLE NOT NULL DEFAULT 0,
        keywords TEXT NOT NULL,
        INDEX idx_entries_user_created (user_id, created_at),
        CONSTRAINT fk_entries_user FOREIGN KEY (user_id)
            REFERENCES users(id) ON DELETE CASCADE
    )
    """,
)


ROW_DECODE_ERRORS = (KeyError, TypeError, ValueError)


def _row_to_user(row: Dict[str, object]) -> UserRecord:
    try:
        reset_expires = row.get("reset_expires")
        return UserRecord(
            user_id=str(row["id"]),
            email=str(row["email"]),
            password_hash=str(row["password_hash"]),
            verified=bool(row["verified"]),
            created_at=_as_utc(row["created_at"]),
            verify_token=row.get("verify_token"),
            reset_token=row.get("reset_token"),
            reset_expires=_as_utc(reset_expires) if reset_expires else None,
        )
    except ROW_DECODE_ERRORS as exc:
        raise PersistenceError(f"Unreadable user row: {exc}") from exc


def _row_to_entry(row: Dict[str, object]) -> Entry:
    keywords: List[str] = []
    if row.get("keywords"):
        try:
            keywords = json.loads(row["keywords"])
        except json.JSONDecodeError:
            keywords = []
    try:
        return Entry(
            id=int(row["id"]),
            user_id=str(row["user_id"]),
            created_at=_as_utc(row["created_at"]),
            text=str(row["text"]),
            sentiment=float(row["sentiment"] or 0.0),
            keywords=[str(keyword) for keyword in keywords],
        )
    except ROW_DECODE_ERRORS as exc:
        raise PersistenceError(f"Unreadable entry row: {exc}") from exc


def _row_to_persona(row: Dict[str, object]) -> PersonaState:
    # pydantic validation errors are ValueErrors
    try:
        return PersonaState(
            user_id=str(row["user_id"]),
            version=int(row["version"]),
            traits=PersonaTraits(**json.loads(row["traits"])),
            last_updated=_as_utc(row["last_updated"]),
        )
    except ROW_DECODE_ERRORS as exc:
        raise PersistenceError(f"Unreadable persona row: {exc}") from exc


class MySQLJournalStore(JournalStore):
    def __init__(
        self,
        host: str,
        port: int,
        user: str,
        password: str,
        database: str,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.database = database

    @contextmanager
    def _db_connection(self):
        try:
            connection = pymysql.connect(
                host=self.host,
                port=self.port,
                user=self.user,
                password=self.password,
                database=self.database,
                cursorclass=pymysql.cursors.DictCursor,
                autocommit=False,
            )
        except pymysql.MySQLError as exc:
            raise PersistenceError(f"Database connection failed: {exc}") from exc
        try:
            yield connection
        except pymysql.MySQLError as exc:
            raise PersistenceError(f"Database operation failed: {exc}") from exc
        finally:
            connection.close()

    def ensure_schema(self) -> None:
        with self._db_connection() as connection:
            with connection.cursor() as cursor:
                for statement in SCHEMA_STATEMENTS:
                    cursor.execute(statement)
            connection.commit()

    def ping(self) -> bool:
        with self._db_connection() as connection:
            with connection.cursor() as cursor:
                cursor.execute("SELECT 1 AS ok")
                row = cursor.fetchone()
        return bool(row and int(row["ok"]) == 1)

    def create_user(
        self, email: str, password_hash: str, verify_token: Optional[str]
    ) -> UserRecord:
        user = UserRecord(
            user_id=uuid.uuid4().hex,
            email=email,
            password_hash=password_hash,
            verified=False,
            created_at=datetime.now(timezone.utc),
            verify_token=verify_token,
        )
        with self._db_connection() as connection:
            with connection.cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO users (id, email, password_hash, verified, verify_token, created_at)
                    VALUES (%s, %s, %s, 0, %s, %s)
                    """,
                    (
                        user.user_id,
                        user.email,
                        user.password_hash,
                        user.verify_token,
                        _to_db_datetime(user.created_at),
                    ),
                )
            connection.commit()
        return user

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._db_connection() as connection:
            with connection.cursor() as cursor:
                cursor.execute(
                    """
                    SELECT id, email, password_hash, verified, verify_token,
                           reset_token, reset_expires, created_at
                    FROM users
                    WHERE id = %s
                    """,
                    (user_id,),
                )
                row = cursor.fetchone()
        return _row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self._db_connection() as connection:
            with connection.cursor() as cursor:
                cursor.execute(
                    """
                    SELECT id, email, password_hash, verified, verify_token,
                           reset_token, reset_expires, created_at
                    FROM users
                    WHERE email = %s
                    """,
                    (email,),
                )
                row = cursor.fetchone()
        return _row_to_user(row) if row else None

    def _update_rows(self, sql: str, params: Tuple[object, ...]) -> int:
        with self._db_connection() as connection:
            with connection.cursor() as cursor:
                affected = cursor.execute(sql, params)
            connection.commit()
        return int(affected)

    def mark_verified(self, email: str, token: str) -> bool:
        return (
            self._update_rows(
                """
                UPDATE users SET verified = 1, verify_token = NULL
                WHERE email = %s AND verify_token = %s
                """,
                (email, token),
            )
            > 0
        )

    def set_reset_token(self, email: str, token: str, expires_at: datetime) -> bool:
        return (
            self._update_rows(
                "UPDATE users SET reset_token = %s, reset_expires = %s WHERE email = %s",
                (token, _to_db_datetime(expires_at), email),
            )
            > 0
        )

    def reset_password(
        self, email: str, token: str, password_hash: str, now: datetime
    ) -> bool:
        return (
            self._update_rows(
                """
                UPDATE users
                SET password_hash = %s, reset_token = NULL, reset_expires = NULL
                WHERE email = %s AND reset_token = %s AND reset_expires > %s
                """,
                (password_hash, email, token, _to_db_datetime(now)),
            )
            > 0
        )

    def insert_entry(
        self,
        user_id: str,
        created_at: datetime,
        text: str,
        sentiment: float,
        keywords: Sequence[str],
    ) -> Entry:
        with self._db_connection() as connection:
            with connection.cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO entries (user_id, created_at, text, sentiment, keywords)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        user_id,
                        _to_db_datetime(created_at),
                        text,
                        sentiment,
                        json.dumps(list(keywords)),
                    ),
                )
                entry_id = cursor.lastrowid
            connection.commit()
        return Entry(
            id=int(entry_id),
            user_id=user_id,
            created_at=_as_utc(created_at),
            text=text,
            sentiment=sentiment,
            keywords=list(keywords),
        )

    def list_recent_entries(
        self,
        user_id: str,
        exclude_id: Optional[int] = None,
        limit: int = RELATED_CANDIDATE_LIMIT,
    ) -> List[Entry]:
        sql = """
            SELECT id, user_id, created_at, text, sentiment, keywords
            FROM entries
            WHERE user_id = %s
        """
        params: Tuple[object, ...] = (user_id,)
        if exclude_id is not None:
            sql += " AND id <> %s"
            params = (*params, exclude_id)
        sql += " ORDER BY created_at DESC, id DESC LIMIT %s"
        params = (*params, limit)
        with self._db_connection() as connection:
            with connection.cursor() as cursor:
                cursor.execute(sql, params)
                rows = cursor.fetchall()
        return [_row_to_entry(row) for row in rows]

    def get_persona(self, user_id: str) -> Optional[PersonaState]:
        with self._db_connection() as connection:
            with connection.cursor() as cursor:
                cursor.execute(
                    """
                    SELECT user_id, version, traits, last_updated
                    FROM persona
                    WHERE user_id = %s
                    """,
                    (user_id,),
                )
                row = cursor.fetchone()
        return _row_to_persona(row) if row else None

    def upsert_persona(
        self, user_id: str, traits: PersonaTraits, updated_at: datetime
    ) -> PersonaState:
        with self._db_connection() as connection:
            with connection.cursor() as cursor:
                cursor.execute(
                    """
                    INSERT INTO persona (user_id, version, traits, last_updated)
                    VALUES (%s, 1, %s, %s)
                    ON DUPLICATE KEY UPDATE
                        version = version + 1,
                        traits = VALUES(traits),
                        last_updated = VALUES(last_updated)
                    """,
                    (
                        user_id,
                        json.dumps(_traits_payload(traits)),
                        _to_db_datetime(updated_at),
                    ),
                )
                cursor.execute(
                    "SELECT user_id, version, traits, last_updated FROM persona WHERE user_id = %s",
                    (user_id,),
                )
                row = cursor.fetchone()
            connection.commit()
        return _row_to_persona(row)

    def create_default_persona(
        self,
        user_id: str,
        traits: PersonaTraits = DEFAULT_PERSONA_TRAITS,
        created_at: Optional[datetime] = None,
    ) -> None:
        timestamp = created_at or datetime.now(timezone.utc)
        with self._db_connection() as connection:
            with connection.cursor() as cursor:
                cursor.execute(
                    """
                    INSERT IGNORE INTO persona (user_id, version, traits, last_updated)
                    VALUES (%s, 1, %s, %s)
                    """,
                    (user_id, json.dumps(_traits_payload(traits)), _to_db_datetime(timestamp)),
                )
            connection.commit()


class InMemoryJournalStore(JournalStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entry_ids = itertools.count(1)
        self.users: Dict[str, UserRecord] = {}
        self.entries: Dict[str, List[Entry]] = {}
        self.personas: Dict[str, PersonaState] = {}

    def ensure_schema(self) -> None:
        return None

    def ping(self) -> bool:
        return True

    def create_user(
        self, email: str, password_hash: str, verify_token: Optional[str]
    ) -> UserRecord:
        user = UserRecord(
            user_id=uuid.uuid4().hex,
            email=email,
            password_hash=password_hash,
            created_at=datetime.now(timezone.utc),
            verify_token=verify_token,
        )
        with self._lock:
            if any(existing.email == email for existing in self.users.values()):
                raise PersistenceError("Email is already registered.")
            self.users[user.user_id] = user
        return user

    def get_user(self, user_id: str) -> Optional[UserRecord]:
        with self._lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self._lock:
            for user in self.users.values():
                if user.email == email:
                    return user
        return None

    def _replace_user(self, user: UserRecord, **changes: object) -> None:
        values = user.dict()
        values.update(changes)
        self.users[user.user_id] = UserRecord(**values)

    def mark_verified(self, email: str, token: str) -> bool:
        with self._lock:
            for user in list(self.users.values()):
                if user.email == email and user.verify_token and user.verify_token == token:
                    self._replace_user(user, verified=True, verify_token=None)
                    return True
        return False

    def set_reset_token(self, email: str, token: str, expires_at: datetime) -> bool:
        with self._lock:
            for user in list(self.users.values()):
                if user.email == email:
                    self._replace_user(
                        user, reset_token=token, reset_expires=_as_utc(expires_at)
                    )
                    return True
        return False

    def reset_password(
        self, email: str, token: str, password_hash: str, now: datetime
    ) -> bool:
        with self._lock:
            for user in list(self.users.values()):
                if (
                    user.email == email
                    and user.reset_token
                    and user.reset_token == token
                    and user.reset_expires
                    and user.reset_expires > _as_utc(now)
                ):
                    self._replace_user(
                        user,
                        password_hash=password_hash,
                        reset_token=None,
                        reset_expires=None,
                    )
                    return True
        return False

    def insert_entry(
        self,
        user_id: str,
        created_at: datetime,
        text: str,
        sentiment: float,
        keywords: Sequence[str],
    ) -> Entry:
        with self._lock:
            entry = Entry(
                id=next(self._entry_ids),
                user_id=user_id,
                created_at=_as_utc(created_at),
                text=text,
                sentiment=sentiment,
                keywords=list(keywords),
            )
            self.entries.setdefault(user_id, []).append(entry)
        return entry

    def list_recent_entries(
        self,
        user_id: str,
        exclude_id: Optional[int] = None,
        limit: int = RELATED_CANDIDATE_LIMIT,
    ) -> List[Entry]:
        with self._lock:
            entries = [
                entry
                for entry in self.entries.get(user_id, [])
                if exclude_id is None or entry.id != exclude_id
            ]
        entries.sort(key=lambda entry: (entry.created_at, entry.id), reverse=True)
        return entries[:limit]

    def get_persona(self, user_id: str) -> Optional[PersonaState]:
        with self._lock:
            return self.personas.get(user_id)

    def upsert_persona(
        self, user_id: str, traits: PersonaTraits, updated_at: datetime
    ) -> PersonaState:
        with self._lock:
            current = self.personas.get(user_id)
            state = PersonaState(
                user_id=user_id,
                version=current.version + 1 if current else 1,
                traits=PersonaTraits(**_traits_payload(traits)),
                last_updated=_as_utc(updated_at),
            )
            self.personas[user_id] = state
        return state

    def create_default_persona(
        self,
        user_id: str,
        traits: PersonaTraits = DEFAULT_PERSONA_TRAITS,
        created_at: Optional[datetime] = None,
    ) -> None:
        with self._lock:
            if user_id in self.personas:
                return
            self.personas[user_id] = PersonaState(
                user_id=user_id,
                version=1,
                traits=PersonaTraits(**_traits_payload(traits)),
                last_updated=_as_utc(created_at or datetime.now(timezone.utc)),
            )


def _build_store() -> JournalStore:
    if STORAGE_BACKEND == "memory":
        return InMemoryJournalStore()
    return MySQLJournalStore(
        host=MYSQL_HOST,
        port=MYSQL_PORT,
        user=MYSQL_USER,
        password=MYSQL_PASSWORD,
        database=MYSQL_DATABASE,
    )


STORE: JournalStore = _build_store()


def _get_store() -> JournalStore:
    return STORE


# ---------------------------------------------------------------------------
# Persona evolution
# ---------------------------------------------------------------------------

PERSONA_SIGNAL_TERMS: Dict[str, Tuple[str, ...]] = {
    "wonder": (
        "why",
        "how",
        "mystery",
        "learn",
        "discover",
        "explore",
        "curious",
        "understand",
        "insight",
        "reflect",
    ),
    "care": (
        "friend",
        "family",
        "love",
        "help",
        "care",
        "support",
        "share",
        "connect",
        "trust",
        "gratitude",
    ),
    "rigor": (
        "plan",
        "analyze",
        "decide",
        "solve",
        "build",
        "measure",
        "improve",
        "system",
        "process",
        "goal",
    ),
    "growth": (
        "challenge",
        "change",
        "try",
        "better",
        "progress",
        "start",
        "achieve",
        "overcome",
        "adapt",
        "grow",
    ),
    "gloom": (
        "stress",
        "worry",
        "fear",
        "doubt",
        "confused",
        "overwhelm",
        "tired",
        "uncertain",
        "stuck",
        "anxious",
    ),
}

# target = base + sum(coefficient * weight); trait moves by `smoothing` toward it
TRAIT_POLICIES: Dict[str, Dict[str, object]] = {
    "curiosity": {"base": 0.3, "weights": {"wonder": 0.7}, "smoothing": 0.2},
    "empathy": {"base": 0.6, "weights": {"care": 0.4, "gloom": -0.2}, "smoothing": 0.3},
    "rigor": {"base": 0.7, "weights": {"rigor": 0.3}, "smoothing": 0.25},
    "mystique": {
        "base": 0.3,
        "weights": {"wonder": 0.2, "gloom": 0.1},
        "smoothing": 0.15,
    },
    "challenge_rate": {
        "base": 0.4,
        "weights": {"wonder": 0.3, "rigor": 0.2, "growth": 0.1, "gloom": -0.1},
        "smoothing": 0.2,
    },
}

PERSONA_LOCKS: Dict[str, threading.Lock] = {}
_PERSONA_LOCKS_GUARD = threading.Lock()


def _persona_lock(user_id: str) -> threading.Lock:
    with _PERSONA_LOCKS_GUARD:
        return PERSONA_LOCKS.setdefault(user_id, threading.Lock())


def _mix(a: float, b: float, t: float) -> float:
    return a * (1 - t) + b * t


def collect_persona_weights(entries: Iterable[Entry]) -> Dict[str, float]:
    tallies: Dict[str, float] = {name: 0.0 for name in PERSONA_SIGNAL_TERMS}
    for entry in entries:
        lowered = entry.text.lower()
        for name, terms in PERSONA_SIGNAL_TERMS.items():
            tallies[name] += _term_hits(lowered, terms)
        if entry.sentiment < 0:
            tallies["gloom"] += 1
    total = max(1.0, sum(tallies.values()))
    return {name: value / total for name, value in tallies.items()}


def trait_target(trait: str, weights: Dict[str, float]) -> float:
    policy = TRAIT_POLICIES[trait]
    target = float(policy["base"])
    for signal, coefficient in policy["weights"].items():
        target += coefficient * weights.get(signal, 0.0)
    return target


def evolve_traits(traits: PersonaTraits, weights: Dict[str, float]) -> PersonaTraits:
    updated: Dict[str, float] = {}
    for name in TRAIT_NAMES:
        smoothing = float(TRAIT_POLICIES[name]["smoothing"])
        updated[name] = _clamp(
            _mix(getattr(traits, name), trait_target(name, weights), smoothing)
        )
    return PersonaTraits(**updated)


def evolve_persona(
    store: JournalStore,
    user_id: str,
    now: Optional[datetime] = None,
    default_traits: PersonaTraits = DEFAULT_PERSONA_TRAITS,
) -> PersonaState:
    with _persona_lock(user_id):
        recent = store.list_recent_entries(user_id, limit=PERSONA_HISTORY_LIMIT)
        weights = collect_persona_weights(recent)
        current = store.get_persona(user_id)
        base_traits = current.traits if current else default_traits
        updated_traits = evolve_traits(base_traits, weights)
        state = store.upsert_persona(
            user_id, updated_traits, now or datetime.now(timezone.utc)
        )
    LOGGER.info(
        "persona_evolved user=%s version=%s traits=(%.3f,%.3f,%.3f,%.3f,%.3f) weights=%s",
        user_id,
        state.version,
        updated_traits.curiosity,
        updated_traits.empathy,
        updated_traits.rigor,
        updated_traits.mystique,
        updated_traits.challenge_rate,
        {name: round(value, 3) for name, value in weights.items()},
    )
    return state


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

DEFAULT_MODE = "reflect"
RITUALS: Dict[str, str] = {
    "reflect": "Name the feeling. Name the fact. Name the next tiny step.",
    "plan": "Draft a 24h micro-plan with one measurable outcome.",
    "untangle": "List the hidden assumptions. Pick one to test today.",
}


def normalize_mode(mode: Optional[str]) -> str:
    if mode is None or not mode.strip():
        return DEFAULT_MODE
    normalized = mode.strip().lower()
    if normalized not in RITUALS:
        raise ValidationError(
            f"Unsupported mode '{mode}'. Expected one of: {', '.join(RITUALS)}."
        )
    return normalized


def ingest_entry(
    store: JournalStore,
    user_id: str,
    text: Optional[str],
    mode: Optional[str] = DEFAULT_MODE,
    now: Optional[datetime] = None,
) -> IngestResult:
    content = (text or "").strip()
    if not content:
        raise ValidationError("text required")
    resolved_mode = normalize_mode(mode)
    timestamp = now or datetime.now(timezone.utc)
    keywords = extract_keywords(content)
    sentiment = score_sentiment(content)

    entry = store.insert_entry(user_id, timestamp, content, sentiment, keywords)
    LOGGER.info(
        "entry_ingested user=%s entry=%s sentiment=%.3f keywords=%s",
        user_id,
        entry.id,
        sentiment,
        keywords,
    )

    # once the entry is stored, later steps only degrade the response
    warnings: List[str] = []
    related: Optional[Entry] = None
    try:
        candidates = store.list_recent_entries(
            user_id, exclude_id=entry.id, limit=RELATED_CANDIDATE_LIMIT
        )
        matches = find_related_entries(entry, candidates, limit=1)
    except Exception as exc:
        LOGGER.warning(
            "related_lookup_failed user=%s entry=%s error=%s", user_id, entry.id, exc
        )
        warnings.append("Related entries are unavailable right now.")
    else:
        if matches:
            related = matches[0].entry
            LOGGER.debug(
                "related_entry user=%s entry=%s related=%s score=%.3f",
                user_id,
                entry.id,
                related.id,
                matches[0].score,
            )

    persona: Optional[PersonaState] = None
    try:
        persona = evolve_persona(store, user_id, now=timestamp)
    except Exception as exc:
        LOGGER.warning(
            "persona_evolution_failed user=%s entry=%s error=%s", user_id, entry.id, exc
        )
        warnings.append("Persona could not be updated; your entry was saved.")
        try:
            persona = store.get_persona(user_id)
        except Exception as read_exc:
            LOGGER.warning("persona_read_failed user=%s error=%s", user_id, read_exc)

    return IngestResult(
        entry=entry,
        persona=persona,
        related=related,
        mode=resolved_mode,
        warnings=warnings,
    )


# ---------------------------------------------------------------------------
# Prompt templates
# ---------------------------------------------------------------------------

RELATED_SNIPPET_CHARS = 140
MODE_FOCUS: Dict[str, str] = {
    "reflect": "Help them process their feelings and identify a clear next step.",
    "plan": "Guide them to set a specific, achievable goal for the next 24 hours.",
    "untangle": "Help them examine their assumptions and choose one to explore today.",
}

PromptTemplate = Callable[[PersonaTraits, str, Entry, Optional[Entry]], PromptPair]


def _related_snippet(related: Optional[Entry]) -> str:
    if related is None:
        return "None"
    text = related.text
    if len(text) > RELATED_SNIPPET_CHARS:
        text = text[:RELATED_SNIPPET_CHARS] + "..."
    return f"#{related.id} ({related.created_at.isoformat()}): {text}"


def _format_traits(traits: PersonaTraits) -> str:
    return ", ".join(f"{name}={getattr(traits, name):.2f}" for name in TRAIT_NAMES)


def companion_prompt(
    traits: PersonaTraits,
    mode: str,
    entry: Entry,
    related: Optional[Entry],
) -> PromptPair:
    system = (
        "You are Dreamshell, a compassionate journaling companion. Speak warmly and "
        "plainly, as if talking with a friend. Do not use markdown, bullet points or "
        "other special formatting.\n\n"
        "Acknowledge what they wrote and how they feel, suggest one small thing to try "
        "today, offer one achievable idea for the week, and close with a thoughtful "
        "question that invites them to reflect or share more. Keep paragraphs short.\n\n"
        f"Persona traits (0..1): {_format_traits(traits)}.\n"
        "Higher curiosity means more questions, higher empathy more emotional support, "
        "higher rigor more practical structure, higher mystique a more poetic voice, "
        "higher challenge_rate more direct challenges.\n"
        f"Mode: {mode.upper()}."
    )
    user = (
        f"Current entry (#{entry.id} at {entry.created_at.isoformat()}):\n"
        f"{entry.text}\n\n"
        f"Related past note:\n{_related_snippet(related)}\n\n"
        f"Ritual:\n{RITUALS[mode]}"
    )
    return PromptPair(system=system, user=user)


def expert_prompt(
    traits: PersonaTraits,
    mode: str,
    entry: Entry,
    related: Optional[Entry],
) -> PromptPair:
    system = (
        "You are Dreamshell, a practical coach for professional development, "
        "personal growth and project execution.\n\n"
        f"Traits (0..1): expertise={traits.rigor:.2f}, practicality={traits.empathy:.2f}, "
        f"strategy={traits.curiosity:.2f}, execution={traits.challenge_rate:.2f}.\n"
        f"Mode: {mode.upper()}.\n\n"
        "Response format:\n"
        "1. CONTEXT: brief analysis of the current situation\n"
        "2. PRACTICAL STEPS: next 24 hours, next week, longer-term direction\n"
        "3. SPECIFIC ADVICE: one concrete, actionable step\n"
        "4. PROGRESS CHECK: one question that clarifies the next move\n\n"
        "Be direct, suggest measurable outcomes, keep it under 160 words, and use past "
        "entries to point out progress patterns."
    )
    if related is not None:
        earlier = f"From {related.created_at.isoformat()}: {', '.join(related.keywords)}"
    else:
        earlier = "None"
    user = (
        f"Current thoughts:\n{entry.text}\n\n"
        f"Earlier related reflection:\n{earlier}\n\n"
        f"Focus:\n{MODE_FOCUS[mode]}\n\n"
        f"Ritual:\n{RITUALS[mode]}"
    )
    return PromptPair(system=system, user=user)


PROMPT_TEMPLATES: Dict[str, PromptTemplate] = {
    "companion": companion_prompt,
    "expert": expert_prompt,
}

if PROMPT_TEMPLATE_VARIANT not in PROMPT_TEMPLATES:
    LOGGER.warning(
        "Unknown PROMPT_TEMPLATE_VARIANT=%s, falling back to companion",
        PROMPT_TEMPLATE_VARIANT,
    )
PROMPT_TEMPLATE: PromptTemplate = PROMPT_TEMPLATES.get(
    PROMPT_TEMPLATE_VARIANT, companion_prompt
)


def build_prompt(result: IngestResult, template: Optional[PromptTemplate] = None) -> PromptPair:
    resolved = template or PROMPT_TEMPLATE
    traits = result.persona.traits if result.persona else DEFAULT_PERSONA_TRAITS
    return resolved(traits, result.mode, result.entry, result.related)


# ---------------------------------------------------------------------------
# LLM client
# ---------------------------------------------------------------------------


def parse_stream_line(line: str) -> Tuple[bool, str]:
    """Parse one line of an OpenAI-style event stream into ``(done, delta)``."""
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return False, ""
    payload = stripped[len("data:"):].strip()
    if payload == "[DONE]":
        return True, ""
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise UpstreamLLMError("Malformed payload in LLM stream.") from exc
    if not isinstance(data, dict):
        raise UpstreamLLMError("Malformed payload in LLM stream.")
    if data.get("error"):
        error = data["error"]
        message = error.get("message") if isinstance(error, dict) else str(error)
        raise UpstreamLLMError(f"LLM stream reported an error: {message}")
    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return False, ""
    delta = choices[0].get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return False, content if isinstance(content, str) else ""


class ChatCompletionClient:
    def __init__(
        self,
        base_url: str,
        api_key: str,
        model: str,
        temperature: float = 0.9,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.temperature = temperature
        self.timeout = timeout
        self.transport = transport

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _request_body(
        self, system_prompt: str, user_prompt: str, stream: bool
    ) -> Dict[str, object]:
        body: Dict[str, object] = {
            "model": self.model,
            "temperature": self.temperature,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
        }
        if stream:
            body["stream"] = True
        return body

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                response = await client.post(
                    f"{self.base_url}/chat/completions",
                    json=self._request_body(system_prompt, user_prompt, stream=False),
                    headers=self._headers(),
                )
        except httpx.HTTPError as exc:
            raise UpstreamLLMError(f"LLM request failed: {exc}") from exc
        if response.status_code >= 400:
            raise UpstreamLLMError(
                f"LLM request failed with status {response.status_code}."
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamLLMError("LLM response was not valid JSON.") from exc
        choices = data.get("choices") if isinstance(data, dict) else None
        message = (choices or [{}])[0].get("message") or {}
        reply = message.get("content") if isinstance(message, dict) else None
        if not isinstance(reply, str) or not reply.strip():
            raise UpstreamLLMError("LLM response was empty.")
        return reply.strip()

    async def stream(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self.transport
            ) as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions",
                    json=self._request_body(system_prompt, user_prompt, stream=True),
                    headers=self._headers(),
                ) as response:
                    if response.status_code >= 400:
                        await response.aread()
                        raise UpstreamLLMError(
                            f"LLM request failed with status {response.status_code}."
                        )
                    async for line in response.aiter_lines():
                        done, delta = parse_stream_line(line)
                        if done:
                            return
                        if delta:
                            yield delta
        except httpx.HTTPError as exc:
            raise UpstreamLLMError(f"LLM stream failed: {exc}") from exc


def _build_llm_client() -> Optional[ChatCompletionClient]:
    if not OPENAI_API_KEY:
        LOGGER.info("OPENAI_API_KEY is not set; replies use the local fallback")
        return None
    return ChatCompletionClient(
        OPENAI_BASE_URL,
        OPENAI_API_KEY,
        OPENAI_MODEL,
        temperature=OPENAI_TEMPERATURE,
        timeout=LLM_REQUEST_TIMEOUT_SECONDS,
    )


LLM_CLIENT: Optional[ChatCompletionClient] = _build_llm_client()


async def generate_reply(
    client: ChatCompletionClient,
    result: IngestResult,
    template: Optional[PromptTemplate] = None,
) -> Optional[str]:
    prompt = build_prompt(result, template)
    try:
        return await client.complete(prompt.system, prompt.user)
    except UpstreamLLMError as exc:
        LOGGER.warning(
            "reply_generation_failed user=%s entry=%s error=%s",
            result.entry.user_id,
            result.entry.id,
            exc,
        )
        return None


# ---------------------------------------------------------------------------
# Reply streaming
# ---------------------------------------------------------------------------

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}
FALLBACK_REPLY = (
    "Memory isn't linear; today braided into an older thread you keep tugging.\n\n",
    "What would be the smallest move that still counts as momentum?\n\n",
)


def format_sse_json(event: str, data: object) -> str:
    return f"event: {event}\ndata: {json.dumps(jsonable_encoder(data))}\n\n"


def format_sse_text(event: str, text: str) -> str:
    lines = re.split(r"\r?\n", text)
    return f"event: {event}\n" + "".join(f"data: {line}\n" for line in lines) + "\n"


def fallback_reply(mode: str) -> List[str]:
    return [*FALLBACK_REPLY, f"Ritual → {RITUALS[mode]}"]


class StreamState(str, Enum):
    OPEN = "open"
    META_SENT = "meta_sent"
    STREAMING = "streaming"
    ENDED = "ended"
    ERRORED = "errored"
    CANCELLED = "cancelled"


class ReplyStream:
    def __init__(
        self,
        result: IngestResult,
        llm_client: Optional[ChatCompletionClient] = None,
        template: Optional[PromptTemplate] = None,
        max_seconds: float = STREAM_MAX_SECONDS,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> None:
        self.result = result
        self.llm_client = llm_client
        self.template = template
        self.max_seconds = max_seconds
        self.is_disconnected = is_disconnected
        self.state = StreamState.OPEN

    def meta_payload(self) -> Dict[str, object]:
        return {
            "entry": self.result.entry,
            "persona": self.result.persona,
            "related": self.result.related,
            "mode": self.result.mode,
        }

    async def events(self) -> AsyncIterator[str]:
        entry_id = self.result.entry.id
        try:
            yield format_sse_json("meta", self.meta_payload())
            self.state = StreamState.META_SENT

            if self.llm_client is None:
                for chunk in fallback_reply(self.result.mode):
                    yield format_sse_text("delta", chunk)
                self.state = StreamState.ENDED
                yield format_sse_json("end", {"ok": True})
                return

            try:
                async with aclosing(self._forward_chunks()) as chunks:
                    async for chunk in chunks:
                        yield chunk
            except Exception as exc:
                self.state = StreamState.ERRORED
                LOGGER.warning("reply_stream_error entry=%s error=%s", entry_id, exc)
                message = str(exc) or "stream failed"
                yield format_sse_json("error", {"message": message})
                return

            if self.state is StreamState.CANCELLED:
                return
            self.state = StreamState.ENDED
            yield format_sse_json("end", {"ok": True})
        except (GeneratorExit, asyncio.CancelledError):
            self.state = StreamState.CANCELLED
            LOGGER.info("reply_stream_cancelled entry=%s", entry_id)
            raise

    async def _forward_chunks(self) -> AsyncIterator[str]:
        prompt = build_prompt(self.result, self.template)
        deadline = time.monotonic() + self.max_seconds
        async with aclosing(self.llm_client.stream(prompt.system, prompt.user)) as chunks:
            while True:
                # bounds stalled upstreams and keep-alive-only streams too
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise self._deadline_error()
                try:
                    chunk = await asyncio.wait_for(chunks.__anext__(), remaining)
                except StopAsyncIteration:
                    return
                except asyncio.TimeoutError as exc:
                    raise self._deadline_error() from exc
                if not chunk:
                    continue
                if self.is_disconnected is not None and await self.is_disconnected():
                    self.state = StreamState.CANCELLED
                    LOGGER.info(
                        "reply_stream_client_gone entry=%s", self.result.entry.id
                    )
                    return
                self.state = StreamState.STREAMING
                yield format_sse_text("delta", chunk)

    def _deadline_error(self) -> UpstreamLLMError:
        return UpstreamLLMError(f"Reply stream exceeded {self.max_seconds:g} seconds.")


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class RateLimiter:
    def __init__(self) -> None:
        self.hits: Dict[str, List[float]] = {}

    def check(self, key: str, limit: int, window_seconds: int) -> None:
        now = time.time()
        window_start = now - window_seconds
        timestamps = [ts for ts in self.hits.get(key, []) if ts > window_start]
        if len(timestamps) >= limit:
            raise HTTPException(
                status_code=429,
                detail="Rate limit exceeded. Please slow down and try again.",
            )
        timestamps.append(now)
        self.hits[key] = timestamps


RATE_LIMITER = RateLimiter()
PASSWORD_HASH_ITERATIONS = 200_000


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _make_token(nbytes: int = 32) -> str:
    return secrets.token_hex(nbytes)


def _hash_password(password: str, salt: Optional[str] = None) -> str:
    resolved_salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        resolved_salt.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{resolved_salt}${digest}"


def _verify_password(password: str, stored: str) -> bool:
    salt, _, digest = stored.partition("$")
    if not salt or not digest:
        return False
    candidate = _hash_password(password, salt=salt).partition("$")[2]
    return hmac.compare_digest(candidate, digest)


def _encode_token(user_id: str, expires_at: datetime) -> str:
    payload = {"user_id": user_id, "exp": int(expires_at.timestamp())}
    payload_bytes = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    b64_payload = base64.urlsafe_b64encode(payload_bytes).decode("utf-8").rstrip("=")
    signature = hmac.new(
        AUTH_SECRET.encode("utf-8"),
        b64_payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"{b64_payload}.{signature}"


def _decode_token(token: str) -> Dict[str, object]:
    try:
        b64_payload, signature = token.split(".", 1)
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="invalid token") from exc
    expected = hmac.new(
        AUTH_SECRET.encode("utf-8"),
        b64_payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    if not hmac.compare_digest(signature, expected):
        raise HTTPException(status_code=401, detail="invalid token")
    padded = b64_payload + "=" * (-len(b64_payload) % 4)
    try:
        data = json.loads(base64.urlsafe_b64decode(padded))
    except ValueError as exc:
        raise HTTPException(status_code=401, detail="invalid token") from exc
    if not isinstance(data, dict):
        raise HTTPException(status_code=401, detail="invalid token")
    return data


def _issue_token(user: UserRecord) -> Tuple[str, datetime]:
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=AUTH_TOKEN_TTL_MINUTES)
    return _encode_token(user.user_id, expires_at), expires_at


def _to_profile(user: UserRecord) -> UserProfile:
    return UserProfile(
        user_id=user.user_id,
        email=user.email,
        verified=user.verified,
        created_at=user.created_at,
    )


def _extract_token(request: Request) -> Optional[str]:
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1].strip()
    token = request.query_params.get("token")
    return token or None


def _current_user(request: Request) -> UserProfile:
    token = _extract_token(request)
    if not token:
        raise HTTPException(status_code=401, detail="missing token")
    payload = _decode_token(token)
    user_id = payload.get("user_id")
    expires = payload.get("exp")
    if not isinstance(user_id, str) or not isinstance(expires, int):
        raise HTTPException(status_code=401, detail="invalid token")
    if expires < int(time.time()):
        raise HTTPException(status_code=401, detail="token expired")
    user = _get_store().get_user(user_id)
    if not user:
        raise HTTPException(status_code=401, detail="invalid token")
    return _to_profile(user)


def _rate_limit(scope: str, limit: int, window_seconds: int):
    def _dependency(request: Request) -> None:
        host = request.client.host if request.client else "unknown"
        key = f"{scope}:{host}"
        RATE_LIMITER.check(key, limit=limit, window_seconds=window_seconds)

    return _dependency


def _send_mail(to: str, subject: str, body: str) -> None:
    if not SMTP_HOST:
        LOGGER.info("dev_mail to=%s subject=%r body=%s", to, subject, body)
        return
    message = EmailMessage()
    message["From"] = MAIL_FROM
    message["To"] = to
    message["Subject"] = subject
    message.set_content(body)
    try:
        with smtplib.SMTP(SMTP_HOST, SMTP_PORT) as server:
            server.starttls()
            if SMTP_USER:
                server.login(SMTP_USER, SMTP_PASSWORD or "")
            server.send_message(message)
    except (smtplib.SMTPException, OSError) as exc:
        LOGGER.warning("mail_delivery_failed to=%s subject=%r error=%s", to, subject, exc)


def _account_link(path: str, token: str, email: str) -> str:
    query = {"token": token, "email": email}
    return f"{APP_BASE_URL.rstrip('/')}/{path}?{httpx.QueryParams(query)}"


# ---------------------------------------------------------------------------
# HTTP surface
# ---------------------------------------------------------------------------


@app.exception_handler(JournalError)
async def _journal_error_handler(request: Request, exc: JournalError) -> JSONResponse:
    if exc.status_code >= 500:
        LOGGER.error("request_failed path=%s error=%s", request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc)})


@app.exception_handler(StarletteHTTPException)
async def _http_error_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": str(exc.detail)},
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return JSONResponse(
        status_code=400,
        content={"error": "; ".join(problems) or "invalid request"},
    )


@app.on_event("startup")
def _bootstrap_storage() -> None:
    try:
        _get_store().ensure_schema()
    except PersistenceError as exc:
        LOGGER.warning("Failed to ensure storage schema: %s", exc)


@app.get("/health")
def health() -> JSONResponse:
    try:
        ok = _get_store().ping()
    except PersistenceError as exc:
        LOGGER.warning("health_check_failed error=%s", exc)
        ok = False
    return JSONResponse(status_code=200 if ok else 503, content={"ok": ok})


@app.get("/ping")
def ping() -> Dict[str, str]:
    return {"status": "alive", "timestamp": datetime.now(timezone.utc).isoformat()}


@app.get("/ping/health")
def ping_health() -> Dict[str, object]:
    return {"status": "healthy", "uptime": time.monotonic() - STARTED_AT}


@app.post("/auth/register", response_model=AuthRegisterResponse)
def auth_register(
    payload: AuthRegisterRequest,
    _: None = Depends(_rate_limit("auth", limit=5, window_seconds=60)),
) -> AuthRegisterResponse:
    email = _normalize_email(payload.email)
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="email & password required")
    if len(payload.password) < 8:
        raise HTTPException(status_code=400, detail="Password must be at least 8 characters.")
    store = _get_store()
    if store.get_user_by_email(email):
        raise HTTPException(status_code=400, detail="email already registered")
    verify_token = _make_token()
    user = store.create_user(email, _hash_password(payload.password), verify_token)
    store.create_default_persona(user.user_id, DEFAULT_PERSONA_TRAITS, user.created_at)
    _send_mail(
        email,
        "Verify your Dreamshell account",
        f"Welcome to Dreamshell.\n\nVerify: {_account_link('verify', verify_token, email)}",
    )
    LOGGER.info("user_registered user=%s", user.user_id)
    token, expires_at = _issue_token(user)
    return AuthRegisterResponse(
        token=token,
        user=_to_profile(user),
        expires_at=expires_at,
        needs_verification=True,
    )


@app.post("/auth/verify", response_model=OkResponse)
def auth_verify(
    payload: AuthVerifyRequest,
    _: None = Depends(_rate_limit("auth", limit=5, window_seconds=60)),
) -> OkResponse:
    if not payload.email or not payload.token:
        raise HTTPException(status_code=400, detail="email & token required")
    if not _get_store().mark_verified(_normalize_email(payload.email), payload.token):
        raise HTTPException(status_code=400, detail="invalid token")
    return OkResponse()


@app.post("/auth/login", response_model=AuthLoginResponse)
def auth_login(
    payload: AuthLoginRequest,
    _: None = Depends(_rate_limit("auth", limit=5, window_seconds=60)),
) -> AuthLoginResponse:
    user = _get_store().get_user_by_email(_normalize_email(payload.email))
    if not user or not _verify_password(payload.password, user.password_hash):
        raise HTTPException(status_code=401, detail="invalid credentials")
    token, expires_at = _issue_token(user)
    return AuthLoginResponse(
        token=token,
        user=_to_profile(user),
        expires_at=expires_at,
        verified=user.verified,
    )


@app.post("/auth/forgot", response_model=OkResponse)
def auth_forgot(
    payload: AuthForgotRequest,
    _: None = Depends(_rate_limit("auth", limit=5, window_seconds=60)),
) -> OkResponse:
    email = _normalize_email(payload.email)
    if not email:
        raise HTTPException(status_code=400, detail="email required")
    reset_token = _make_token()
    expires_at = datetime.now(timezone.utc) + timedelta(minutes=RESET_TOKEN_TTL_MINUTES)
    if _get_store().set_reset_token(email, reset_token, expires_at):
        _send_mail(
            email,
            "Reset your Dreamshell password",
            f"Reset link ({RESET_TOKEN_TTL_MINUTES} minutes): "
            f"{_account_link('reset', reset_token, email)}",
        )
    # same answer for unknown emails
    return OkResponse()


@app.post("/auth/reset", response_model=OkResponse)
def auth_reset(
    payload: AuthResetRequest,
    _: None = Depends(_rate_limit("auth", limit=5, window_seconds=60)),
) -> OkResponse:
    if not payload.email or not payload.token or not payload.password:
        raise HTTPException(status_code=400, detail="email, token, password required")
    if len(payload.password) < 8:
        raise HTTPException(status_code=400, detail="Password must be at least 8 characters.")
    updated = _get_store().reset_password(
        _normalize_email(payload.email),
        payload.token,
        _hash_password(payload.password),
        datetime.now(timezone.utc),
    )
    if not updated:
        raise HTTPException(status_code=400, detail="invalid or expired token")
    return OkResponse()


@app.get("/auth/me", response_model=AuthMeResponse)
def auth_me(user: UserProfile = Depends(_current_user)) -> AuthMeResponse:
    return AuthMeResponse(user=user)


@app.get("/persona", response_model=PersonaState)
def persona_get(user: UserProfile = Depends(_current_user)) -> PersonaState:
    store = _get_store()
    persona = store.get_persona(user.user_id)
    if persona is None:
        store.create_default_persona(user.user_id, DEFAULT_PERSONA_TRAITS)
        persona = store.get_persona(user.user_id)
    if persona is None:
        raise PersistenceError("Persona could not be loaded.")
    return persona


@app.get("/entries", response_model=EntryListResponse)
def entries_list(
    limit: int = ENTRY_LIST_DEFAULT_LIMIT,
    user: UserProfile = Depends(_current_user),
) -> EntryListResponse:
    resolved_limit = max(1, min(limit, ENTRY_LIST_MAX_LIMIT))
    entries = _get_store().list_recent_entries(user.user_id, limit=resolved_limit)
    return EntryListResponse(entries=entries)


@app.post(
    "/entry",
    response_model=EntryCreateResponse,
    response_model_exclude_none=True,
)
async def entry_create(
    payload: EntryCreateRequest,
    user: UserProfile = Depends(_current_user),
    _: None = Depends(_rate_limit("entries", limit=60, window_seconds=60)),
) -> EntryCreateResponse:
    result = await run_in_threadpool(
        ingest_entry, _get_store(), user.user_id, payload.text, payload.mode
    )
    reply: Optional[str] = None
    if LLM_CLIENT is not None:
        reply = await generate_reply(LLM_CLIENT, result)
    return EntryCreateResponse(
        entry=result.entry,
        persona=result.persona,
        related=result.related,
        mode=result.mode,
        reply=reply,
        warnings=result.warnings,
    )


@app.get("/entry/stream")
async def entry_stream(
    request: Request,
    text: str = "",
    mode: Optional[str] = None,
    user: UserProfile = Depends(_current_user),
    _: None = Depends(_rate_limit("entries", limit=60, window_seconds=60)),
) -> StreamingResponse:
    result = await run_in_threadpool(
        ingest_entry, _get_store(), user.user_id, text, mode
    )
    stream = ReplyStream(
        result,
        llm_client=LLM_CLIENT,
        is_disconnected=request.is_disconnected,
    )
    return StreamingResponse(
        stream.events(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
