from matchchat.core.exceptions import NotFound
from matchchat.core.settings import settings
from matchchat.models.conversation import SUPPORT_ID
from matchchat.models.user import PARTICIPANT_ROLES
from matchchat.repositories.user_repository import UserRepository
from matchchat.schemas.chat import ParticipantDetails


class IdentityDirectory:
    """Resolves participant ids to display profiles from the users collection."""

    def __init__(self, user_repository: UserRepository) -> None:
        self.user_repository = user_repository

    @staticmethod
    def support_profile() -> ParticipantDetails:
        return ParticipantDetails(display_name=settings.SUPPORT_DISPLAY_NAME, avatar_address="", role="admin")

    async def resolve_participant(self, participant_id: str) -> ParticipantDetails:
        if participant_id == SUPPORT_ID:
            return self.support_profile()

        user = await self.user_repository.get_user_by_id(participant_id)
        if not user:
            raise NotFound(f"Participant {participant_id} not found")

        name = " ".join(part for part in (user.get("first_name"), user.get("last_name")) if part)
        role = user.get("role")
        if role not in PARTICIPANT_ROLES:
            role = "client"
        return ParticipantDetails(
            display_name=name or user.get("email") or participant_id,
            avatar_address=user.get("photo_url") or "",
            role=role,
        )
