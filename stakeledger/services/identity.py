"""
Persistent session identity.

A live session is known in memory by a transient runtime key, but its stake
records need one durable session id that survives app restarts, pauses and
multi-day tournaments. The first time a stake is about to be written for a
runtime key we mint "{owner_id}_{epoch_seconds}" and cache it; later lookups
reuse it until the session is finalised and the entry released.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from stakeledger.config import settings
from stakeledger.services.base import ValidationError
from stakeledger.services.kv_store import KeyValueStore
from stakeledger.utils.logging import LoggerMixin

IDENTITY_PREFIX = "identity"
OWNER_PREFIX = "identity-owner"

# Bounded so a corrupt reverse index cannot spin forever
MAX_MINT_ATTEMPTS = 3600


def derive_session_identity(owner_id: str, created_at: datetime) -> str:
    """Pure derivation of the identity string from owner and creation time."""
    if created_at.tzinfo is None:
        created_at = created_at.replace(tzinfo=timezone.utc)
    return f"{owner_id}_{int(created_at.timestamp())}"


def _identity_key(runtime_session_key: str) -> str:
    return f"{IDENTITY_PREFIX}:{runtime_session_key}"


def _owner_key(identity: str) -> str:
    return f"{OWNER_PREFIX}:{identity}"


class SessionIdentityResolver(LoggerMixin):
    """Resolves and caches the durable identity of an in-progress session."""

    def __init__(self, store: KeyValueStore, claim_ttl_seconds: Optional[int] = None):
        self._store = store
        if claim_ttl_seconds is None:
            claim_ttl_seconds = settings.identity_claim_ttl_days * 86400
        self._claim_ttl = claim_ttl_seconds

    async def peek(self, runtime_session_key: str) -> Optional[str]:
        """Return the cached identity without minting one."""
        return await self._store.get(_identity_key(runtime_session_key))

    async def resolve(
        self,
        runtime_session_key: str,
        owner_id: str,
        now: Optional[datetime] = None,
    ) -> str:
        """
        Get the persistent identity for a runtime session, minting it on first use.

        Args:
            runtime_session_key: Transient key of the live session
            owner_id: The staked player
            now: Creation time override (defaults to current UTC time)

        Returns:
            The identity string, identical for every call with the same key
        """
        if not runtime_session_key:
            raise ValidationError("runtime_session_key is required")
        if not owner_id:
            raise ValidationError("owner_id is required")

        cached = await self.peek(runtime_session_key)
        if cached:
            return cached

        created_at = now or datetime.now(timezone.utc)
        for offset in range(MAX_MINT_ATTEMPTS):
            candidate = derive_session_identity(owner_id, created_at + timedelta(seconds=offset))
            # Claim the identity string so no other runtime key can mint it
            if await self._store.set_if_absent(
                _owner_key(candidate), runtime_session_key, ttl=self._claim_ttl,
            ):
                break
            if await self._store.get(_owner_key(candidate)) == runtime_session_key:
                break
        else:
            raise ValidationError(f"Could not mint a unique session identity for {owner_id}")

        if await self._store.set_if_absent(_identity_key(runtime_session_key), candidate):
            self.log.info(
                "Minted session identity",
                runtime_session_key=runtime_session_key,
                session_id=candidate,
            )
            return candidate

        # Lost a race with a concurrent resolve of the same key: use its identity
        await self._store.delete(_owner_key(candidate))
        winner = await self.peek(runtime_session_key)
        return winner or candidate

    async def release(self, runtime_session_key: str) -> bool:
        """
        Clear the cache entry once the session is finalized.

        The identity's claim is kept until its ttl runs out, far beyond any
        session, so a later session cannot mint the same string and collide
        with this session's stake records.

        Returns:
            True if an entry was removed
        """
        identity = await self.peek(runtime_session_key)
        if identity is None:
            return False
        await self._store.delete(_identity_key(runtime_session_key))
        self.log.info(
            "Released session identity",
            runtime_session_key=runtime_session_key,
            session_id=identity,
        )
        return True
