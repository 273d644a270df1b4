"""
Manual staker directory.

Off-platform backers a player keeps on file. Agreements and invites for a
manual staker reference the directory entry by id when one exists; the
directory is also where staker display names are resolved for presentation.
"""

from typing import Awaitable, Callable, Optional

from sqlalchemy import or_, select

from stakeledger.db.database import generate_id, get_session
from stakeledger.db.models import ManualStakerProfile, utcnow
from stakeledger.services.base import (
    ManualStaker,
    NotFoundError,
    OperationResult,
    RegisteredStaker,
    StakerIdentity,
    ValidationError,
    normalize_display_name,
)
from stakeledger.utils.logging import LoggerMixin
from stakeledger.utils.retry import with_read_retry

# Looks up a registered user's display name; None when unknown
ProfileLookup = Callable[[str], Awaitable[Optional[str]]]


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


class ManualStakerDirectory(LoggerMixin):
    """CRUD over manual staker profiles, scoped to the player who created them."""

    def __init__(self, profile_lookup: Optional[ProfileLookup] = None):
        self._profile_lookup = profile_lookup

    async def create(
        self,
        created_by_user_id: str,
        name: str,
        contact_info: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> ManualStakerProfile:
        """Add a backer to the player's directory."""
        clean_name = _clean(name)
        if not clean_name:
            raise ValidationError("Manual staker name is required")
        if not created_by_user_id:
            raise ValidationError("created_by_user_id is required")

        now = utcnow()
        profile = ManualStakerProfile(
            id=generate_id(),
            created_by_user_id=created_by_user_id,
            name=clean_name,
            contact_info=_clean(contact_info),
            notes=_clean(notes),
            created_at=now,
            last_updated_at=now,
        )
        async with get_session() as session:
            session.add(profile)

        self.log.info("Created manual staker", profile_id=profile.id, user_id=created_by_user_id)
        return profile

    @with_read_retry
    async def get(self, profile_id: str) -> Optional[ManualStakerProfile]:
        async with get_session() as session:
            return await session.get(ManualStakerProfile, profile_id)

    @with_read_retry
    async def list_for_user(self, user_id: str) -> list[ManualStakerProfile]:
        """A player's manual stakers, sorted by name."""
        async with get_session() as session:
            result = await session.execute(
                select(ManualStakerProfile)
                .where(ManualStakerProfile.created_by_user_id == user_id)
            )
            profiles = list(result.scalars().all())
        return sorted(profiles, key=lambda p: p.name.casefold())

    async def update(
        self,
        profile_id: str,
        name: Optional[str] = None,
        contact_info: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> OperationResult[ManualStakerProfile]:
        """Update the given fields; fields left as None are unchanged."""
        if name is not None and not _clean(name):
            raise ValidationError("Manual staker name cannot be blank")

        async with get_session() as session:
            profile = await session.get(ManualStakerProfile, profile_id)
            if profile is None:
                return OperationResult.fail(NotFoundError(f"Manual staker {profile_id} not found"))
            if name is not None:
                profile.name = _clean(name)
            if contact_info is not None:
                profile.contact_info = _clean(contact_info)
            if notes is not None:
                profile.notes = _clean(notes)
            profile.last_updated_at = utcnow()

        self.log.info("Updated manual staker", profile_id=profile_id)
        return OperationResult.ok(profile)

    async def delete(self, profile_id: str) -> OperationResult[bool]:
        """
        Remove a directory entry.

        Agreements keep the stored display name, so history stays readable.
        """
        async with get_session() as session:
            profile = await session.get(ManualStakerProfile, profile_id)
            if profile is None:
                return OperationResult.fail(NotFoundError(f"Manual staker {profile_id} not found"))
            await session.delete(profile)

        self.log.info("Deleted manual staker", profile_id=profile_id)
        return OperationResult.ok(True)

    @with_read_retry
    async def search(self, query: str, user_id: str) -> list[ManualStakerProfile]:
        """Case-insensitive match on name or contact info within one player's directory."""
        needle = (query or "").strip()
        if not needle:
            return await self.list_for_user(user_id)

        pattern = f"%{needle}%"
        async with get_session() as session:
            result = await session.execute(
                select(ManualStakerProfile)
                .where(ManualStakerProfile.created_by_user_id == user_id)
                .where(
                    or_(
                        ManualStakerProfile.name.ilike(pattern),
                        ManualStakerProfile.contact_info.ilike(pattern),
                    )
                )
            )
            profiles = list(result.scalars().all())
        return sorted(profiles, key=lambda p: p.name.casefold())

    async def has_existing(self, name: str, user_id: str) -> bool:
        """Whether the player already has a backer with this name."""
        wanted = normalize_display_name(name or "")
        if not wanted:
            return False
        profiles = await self.list_for_user(user_id)
        return any(normalize_display_name(p.name) == wanted for p in profiles)

    async def resolve_staker_display_name(self, identity: StakerIdentity) -> str:
        """
        Display name for a staker identity.

        Manual stakers resolve through their directory entry and fall back to
        the stored name. Registered stakers resolve through the profile
        lookup and fall back to the user id.
        """
        if isinstance(identity, ManualStaker):
            if identity.directory_id:
                profile = await self.get(identity.directory_id)
                if profile is not None:
                    return profile.display_name
            return identity.name
        if isinstance(identity, RegisteredStaker):
            if self._profile_lookup is not None:
                name = await self._profile_lookup(identity.user_id)
                if name:
                    return name
            return identity.user_id
        raise ValidationError("Missing staker identity")


# Singleton instance
staker_directory = ManualStakerDirectory()
