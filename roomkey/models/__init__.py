from roomkey.models.base import Base
from roomkey.models.room import Room
from roomkey.models.room_invitation import RoomInvitation
from roomkey.models.room_user import RoomUser

__all__ = [
    "Base",
    "Room",
    "RoomInvitation",
    "RoomUser",
]
