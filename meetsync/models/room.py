"""
Room エンティティモデル

会議室は静的なカタログで、コアからは変更されません。
"""

from typing import Iterable, List

from pydantic import BaseModel, ConfigDict, Field

from .user import Location


class Room(BaseModel):
    """会議室"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="会議室ID")
    building: str = Field(..., description="建物名")
    name: str = Field(..., description="会議室名")
    capacity: int = Field(..., ge=1, description="収容人数")
    location: Location = Field(..., description="所在地")

    @property
    def display_name(self) -> str:
        return f"{self.name}, {self.building}"


def rooms_for_capacity(rooms: Iterable[Room], required_capacity: int) -> List[Room]:
    """必要人数を収容できる会議室のみを返す"""
    return [room for room in rooms if room.capacity >= required_capacity]


# キャンパス内の学習室カタログ
DEFAULT_ROOMS: List[Room] = [
    Room(id="room-lib-1", building="GT Library", name="Study Room 101A", capacity=4,
         location=Location(lat=33.7745, lng=-84.3963)),
    Room(id="room-lib-2", building="GT Library", name="Group Area 205C", capacity=8,
         location=Location(lat=33.7745, lng=-84.3963)),
    Room(id="room-kacb-1", building="Klaus Advanced Computing", name="Project Room 2444", capacity=6,
         location=Location(lat=33.7773, lng=-84.3973)),
    Room(id="room-kacb-2", building="Klaus Advanced Computing", name="Huddle Space 1122", capacity=3,
         location=Location(lat=33.7773, lng=-84.3973)),
    Room(id="room-coda-1", building="CODA", name="Collaboration Pod 7B", capacity=10,
         location=Location(lat=33.7766, lng=-84.3908)),
    Room(id="room-coda-2", building="CODA", name="Think Tank 12A", capacity=5,
         location=Location(lat=33.7766, lng=-84.3908)),
    Room(id="room-ic-1", building="Instructional Center", name="Tutoring Room 105", capacity=4,
         location=Location(lat=33.7788, lng=-84.3989)),
    Room(id="room-ic-2", building="Instructional Center", name="Presentation Room 211", capacity=12,
         location=Location(lat=33.7788, lng=-84.3989)),
]
