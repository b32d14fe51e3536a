"""
Context Store — latest ConversationContext per session.

Sessions are keyed by (tenant_id, session_id) so contexts of different
tenants and sessions never share state. Values stored here are immutable
snapshots; the store only ever swaps one snapshot for the next.
Production: swap with a Redis or database-backed store.
"""
from __future__ import annotations

import structlog
from typing import Optional

from models.schemas import ConversationContext, SessionStatus

logger = structlog.get_logger()


def session_key(tenant_id: str, session_id: str) -> str:
    return f"{tenant_id}:{session_id}"


class ContextStore:
    """In-memory context store. One context per session."""

    def __init__(self):
        self._contexts: dict[str, ConversationContext] = {}

    def save(self, tenant_id: str, session_id: str, context: ConversationContext):
        self._contexts[session_key(tenant_id, session_id)] = context

    def get(self, tenant_id: str, session_id: str) -> Optional[ConversationContext]:
        return self._contexts.get(session_key(tenant_id, session_id))

    def delete(self, tenant_id: str, session_id: str):
        removed = self._contexts.pop(session_key(tenant_id, session_id), None)
        if removed is not None:
            logger.info("session_context_removed",
                        tenant_id=tenant_id, session_id=session_id)

    def list_sessions(self, tenant_id: str = None) -> list[str]:
        keys = list(self._contexts)
        if tenant_id is not None:
            prefix = f"{tenant_id}:"
            keys = [k for k in keys if k.startswith(prefix)]
        return keys

    def list_by_status(self, status: SessionStatus) -> list[str]:
        return [k for k, ctx in self._contexts.items() if ctx.status == status]

    @property
    def count(self) -> int:
        return len(self._contexts)
