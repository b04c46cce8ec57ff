from typing import Literal, Optional, TypedDict


ParticipantRole = Literal["client", "supplier", "planner", "admin"]
PARTICIPANT_ROLES = ("client", "supplier", "planner", "admin")


class UserDocument(TypedDict, total=False):

    _id: str
    email: str
    first_name: str
    last_name: str
    photo_url: Optional[str]
    role: ParticipantRole
