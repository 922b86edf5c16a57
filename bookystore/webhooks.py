"""Queries for received webhook events and remote object snapshots."""

from __future__ import annotations

import sqlite3
from typing import Any

from bookystore.accounting import _params
from bookystore.records import (
    _NOW_SQL,
    NotFoundError,
    ObjectSnapshot,
    StripeWebhookEvent,
    _record_from_row,
)

_NOW = f"({_NOW_SQL})"


def _null_if_empty(value: str) -> str | None:
    return value or None


class WebhookQueries:
    """Webhook event and snapshot queries over one database connection.

    Statements run on the connection as given; committing is left to the
    caller that owns the connection.
    """

    def __init__(self, connection: sqlite3.Connection) -> None:
        self._connection = connection

    def insert_webhook_event(self, event: StripeWebhookEvent) -> bool:
        """Store a new event; returns False when it was already stored."""
        cursor = self._connection.execute(
            """
            INSERT INTO stripe_webhook_events (
                stripe_event_id, event_type, livemode, api_version, stripe_created_at, payload
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (stripe_event_id) DO NOTHING
            """,
            _params(
                [
                    event.id,
                    event.event_type,
                    event.livemode,
                    _null_if_empty(event.api_version),
                    event.stripe_created_at,
                    bytes(event.payload),
                ]
            ),
        )
        return cursor.rowcount == 1

    def get_webhook_event(self, event_id: str) -> StripeWebhookEvent:
        """The stored event with the given id."""
        cursor = self._connection.execute(
            """
            SELECT stripe_event_id AS id, event_type, livemode, api_version, stripe_created_at,
                received_at, payload, processed_at, processing_error
            FROM stripe_webhook_events
            WHERE stripe_event_id = ?
            """,
            (event_id,),
        )
        names = [column[0] for column in cursor.description]
        row = cursor.fetchone()
        if row is None:
            raise NotFoundError()
        data: dict[str, Any] = dict(zip(names, row))
        return _record_from_row(StripeWebhookEvent, data)

    def reset_webhook_for_retry(self, event: StripeWebhookEvent) -> None:
        """Overwrite a stored event and clear its processing state."""
        self._connection.execute(
            """
            UPDATE stripe_webhook_events
            SET event_type = ?,
                livemode = ?,
                api_version = ?,
                stripe_created_at = ?,
                payload = ?,
                processed_at = NULL,
                processing_error = NULL
            WHERE stripe_event_id = ?
            """,
            _params(
                [
                    event.event_type,
                    event.livemode,
                    _null_if_empty(event.api_version),
                    event.stripe_created_at,
                    bytes(event.payload),
                    event.id,
                ]
            ),
        )

    def mark_webhook_processed(self, event_id: str) -> None:
        """Stamp an event as processed and clear any error."""
        self._connection.execute(
            f"UPDATE stripe_webhook_events SET processed_at = {_NOW}, processing_error = NULL "
            "WHERE stripe_event_id = ?",
            (event_id,),
        )

    def mark_webhook_failed(self, event_id: str, reason: str) -> None:
        """Record why processing an event failed."""
        self._connection.execute(
            "UPDATE stripe_webhook_events SET processing_error = ? WHERE stripe_event_id = ?",
            (reason, event_id),
        )

    def upsert_object_snapshot(self, snapshot: ObjectSnapshot) -> None:
        """Insert a snapshot or refresh its payload, livemode and sync time."""
        self._connection.execute(
            f"""
            INSERT INTO stripe_object_snapshots (object_type, stripe_object_id, livemode, payload)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (object_type, stripe_object_id) DO UPDATE SET
                payload = excluded.payload,
                livemode = excluded.livemode,
                last_synced_at = {_NOW}
            """,
            _params(
                [snapshot.object_type, snapshot.object_id, snapshot.livemode, bytes(snapshot.payload)]
            ),
        )