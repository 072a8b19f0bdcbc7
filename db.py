from __future__ import annotations

import os
from functools import lru_cache
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

SUBSCRIPTION_FIELDS = {
    "plan",
    "status",
    "stripe_customer_id",
    "stripe_subscription_id",
    "current_period_start",
    "current_period_end",
    "cancel_at_period_end",
}


def _database_url() -> str:
    url = os.getenv("DATABASE_URL")
    if not url:
        raise RuntimeError("DATABASE_URL is not set.")
    return url


def get_connection():
    return psycopg.connect(_database_url(), row_factory=dict_row)


@lru_cache(maxsize=1)
def ensure_schema() -> None:
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id SERIAL PRIMARY KEY,
                    open_id TEXT NOT NULL UNIQUE,
                    name TEXT,
                    email TEXT,
                    login_method TEXT,
                    role TEXT NOT NULL DEFAULT 'user',
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    last_signed_in TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id SERIAL PRIMARY KEY,
                    user_id INTEGER NOT NULL,
                    plan TEXT NOT NULL
                        CHECK (plan IN ('starter', 'professional', 'enterprise')),
                    status TEXT NOT NULL DEFAULT 'trialing'
                        CHECK (status IN ('trialing', 'active', 'past_due', 'canceled')),
                    stripe_customer_id TEXT,
                    stripe_subscription_id TEXT,
                    current_period_start TIMESTAMPTZ,
                    current_period_end TIMESTAMPTZ,
                    cancel_at_period_end BOOLEAN NOT NULL DEFAULT false,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE INDEX IF NOT EXISTS subscriptions_user_created_idx
                ON subscriptions (user_id, created_at DESC);
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS conversations (
                    id SERIAL PRIMARY KEY,
                    user_id INTEGER NOT NULL,
                    title TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
                    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS messages (
                    id SERIAL PRIMARY KEY,
                    conversation_id INTEGER NOT NULL
                        REFERENCES conversations(id) ON DELETE CASCADE,
                    role TEXT NOT NULL CHECK (role IN ('user', 'assistant', 'system')),
                    content TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS generated_content (
                    id SERIAL PRIMARY KEY,
                    user_id INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    content TEXT NOT NULL,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )
            cur.execute(
                """
                CREATE TABLE IF NOT EXISTS analysis_results (
                    id SERIAL PRIMARY KEY,
                    user_id INTEGER NOT NULL,
                    analysis_type TEXT NOT NULL,
                    input_data TEXT NOT NULL,
                    insights TEXT NOT NULL,
                    recommendations TEXT,
                    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
                );
                """
            )


def ping() -> None:
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")


# Users


def upsert_user(
    *,
    open_id: str,
    name: str | None = None,
    email: str | None = None,
    login_method: str | None = None,
    role: str | None = None,
) -> dict[str, Any]:
    """Insert the user or refresh their profile and last sign-in time."""
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO users (open_id, name, email, login_method, role)
                VALUES (%s, %s, %s, %s, COALESCE(%s, 'user'))
                ON CONFLICT (open_id) DO UPDATE SET
                    name = COALESCE(EXCLUDED.name, users.name),
                    email = COALESCE(EXCLUDED.email, users.email),
                    login_method = COALESCE(EXCLUDED.login_method, users.login_method),
                    role = COALESCE(%s, users.role),
                    last_signed_in = now(),
                    updated_at = now()
                RETURNING *
                """,
                (open_id, name, email, login_method, role, role),
            )
            return dict(cur.fetchone())


# Subscriptions


def create_subscription(
    *,
    user_id: int,
    plan: str,
    status: str = "trialing",
    stripe_customer_id: str | None = None,
    stripe_subscription_id: str | None = None,
    current_period_start: Any = None,
    current_period_end: Any = None,
    cancel_at_period_end: bool = False,
) -> dict[str, Any]:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO subscriptions (
                    user_id,
                    plan,
                    status,
                    stripe_customer_id,
                    stripe_subscription_id,
                    current_period_start,
                    current_period_end,
                    cancel_at_period_end
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (
                    user_id,
                    plan,
                    status,
                    stripe_customer_id,
                    stripe_subscription_id,
                    current_period_start,
                    current_period_end,
                    cancel_at_period_end,
                ),
            )
            return dict(cur.fetchone())


def update_subscription(subscription_id: int, **fields: Any) -> None:
    unknown = set(fields) - SUBSCRIPTION_FIELDS
    if unknown:
        raise ValueError(f"Unknown subscription fields: {', '.join(sorted(unknown))}")
    if not fields:
        return
    assignments = sql.SQL(", ").join(
        sql.SQL("{} = {}").format(sql.Identifier(name), sql.Placeholder(name)) for name in fields
    )
    query = sql.SQL(
        "UPDATE subscriptions SET {}, updated_at = now() WHERE id = %(subscription_id)s"
    ).format(assignments)
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(query, {**fields, "subscription_id": subscription_id})


def get_latest_subscription(user_id: int) -> dict[str, Any] | None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT *
                FROM subscriptions
                WHERE user_id = %s
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (user_id,),
            )
            row = cur.fetchone()
            return dict(row) if row else None


# Conversations


def create_conversation(*, user_id: int, title: str) -> int:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "INSERT INTO conversations (user_id, title) VALUES (%s, %s) RETURNING id",
                (user_id, title),
            )
            return int(cur.fetchone()["id"])


def get_conversation(conversation_id: int) -> dict[str, Any] | None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute("SELECT * FROM conversations WHERE id = %s", (conversation_id,))
            row = cur.fetchone()
            return dict(row) if row else None


def get_user_conversations(user_id: int) -> list[dict[str, Any]]:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT * FROM conversations WHERE user_id = %s ORDER BY updated_at DESC",
                (user_id,),
            )
            return [dict(row) for row in cur.fetchall()]


def get_conversation_messages(conversation_id: int) -> list[dict[str, Any]]:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT * FROM messages WHERE conversation_id = %s ORDER BY created_at, id",
                (conversation_id,),
            )
            return [dict(row) for row in cur.fetchall()]


def create_message(*, conversation_id: int, role: str, content: str) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "INSERT INTO messages (conversation_id, role, content) VALUES (%s, %s, %s)",
                (conversation_id, role, content),
            )
            cur.execute(
                "UPDATE conversations SET updated_at = now() WHERE id = %s",
                (conversation_id,),
            )


# Generated content and analysis history


def save_generated_content(*, user_id: int, type: str, prompt: str, content: str) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO generated_content (user_id, type, prompt, content)
                VALUES (%s, %s, %s, %s)
                """,
                (user_id, type, prompt, content),
            )


def get_user_generated_content(user_id: int, type: str | None = None) -> list[dict[str, Any]]:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            if type:
                cur.execute(
                    """
                    SELECT *
                    FROM generated_content
                    WHERE user_id = %s AND type = %s
                    ORDER BY created_at DESC
                    """,
                    (user_id, type),
                )
            else:
                cur.execute(
                    """
                    SELECT *
                    FROM generated_content
                    WHERE user_id = %s
                    ORDER BY created_at DESC
                    """,
                    (user_id,),
                )
            return [dict(row) for row in cur.fetchall()]


def save_analysis_result(
    *,
    user_id: int,
    analysis_type: str,
    input_data: str,
    insights: str,
    recommendations: str | None,
) -> None:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO analysis_results (
                    user_id, analysis_type, input_data, insights, recommendations
                )
                VALUES (%s, %s, %s, %s, %s)
                """,
                (user_id, analysis_type, input_data, insights, recommendations),
            )


def get_user_analysis_results(
    user_id: int, analysis_type: str | None = None
) -> list[dict[str, Any]]:
    ensure_schema()
    with get_connection() as conn:
        with conn.cursor() as cur:
            if analysis_type:
                cur.execute(
                    """
                    SELECT *
                    FROM analysis_results
                    WHERE user_id = %s AND analysis_type = %s
                    ORDER BY created_at DESC
                    """,
                    (user_id, analysis_type),
                )
            else:
                cur.execute(
                    """
                    SELECT *
                    FROM analysis_results
                    WHERE user_id = %s
                    ORDER BY created_at DESC
                    """,
                    (user_id,),
                )
            return [dict(row) for row in cur.fetchall()]
