import threading
import time
from dataclasses import dataclass, field

from config import DEFAULT_WEAPON, SPAWN_HEIGHT


class MalformedPayload(ValueError):
    """Raised when an inbound event payload is missing fields or has bad types."""


def _number(payload, key):
    try:
        value = payload[key]
    except (KeyError, TypeError):
        raise MalformedPayload(f"missing field {key!r}")
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise MalformedPayload(f"field {key!r} must be a number, got {value!r}")
    return float(value)


@dataclass
class Position:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    @classmethod
    def from_payload(cls, payload):
        return cls(_number(payload, 'x'), _number(payload, 'y'), _number(payload, 'z'))

    def to_dict(self):
        return {'x': self.x, 'y': self.y, 'z': self.z}


@dataclass
class Rotation:
    yaw: float = 0.0
    pitch: float = 0.0

    @classmethod
    def from_payload(cls, payload):
        return cls(_number(payload, 'yaw'), _number(payload, 'pitch'))

    def to_dict(self):
        return {'yaw': self.yaw, 'pitch': self.pitch}


@dataclass
class Transform:
    position: Position = field(default_factory=lambda: Position(y=SPAWN_HEIGHT))
    rotation: Rotation = field(default_factory=Rotation)

    @classmethod
    def from_payload(cls, payload):
        if not isinstance(payload, dict):
            raise MalformedPayload("transform payload must be an object")
        return cls(Position.from_payload(payload.get('position')),
                   Rotation.from_payload(payload.get('rotation')))


@dataclass
class PlayerRecord:
    id: str
    name: str
    room_id: str
    transform: Transform = field(default_factory=Transform)
    weapon: str = DEFAULT_WEAPON
    # Last applied update sequence number, None until a sequenced update lands
    seq: int | None = None

    @property
    def position(self):
        return self.transform.position

    @property
    def rotation(self):
        return self.transform.rotation

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'roomId': self.room_id,
            'position': self.position.to_dict(),
            'rotation': self.rotation.to_dict(),
            'weapon': self.weapon,
        }


@dataclass
class EnemyState:
    id: str | int
    position: Position
    direction: Position
    alive: bool = True

    @classmethod
    def from_payload(cls, payload):
        if not isinstance(payload, dict) or 'id' not in payload:
            raise MalformedPayload("enemy entry must be an object with an id")
        enemy_id = payload['id']
        if isinstance(enemy_id, bool) or not isinstance(enemy_id, (str, int)):
            raise MalformedPayload(f"enemy id must be a string or integer, got {enemy_id!r}")
        alive = payload.get('alive', True)
        if not isinstance(alive, bool):
            raise MalformedPayload(f"enemy alive flag must be a bool, got {alive!r}")
        return cls(
            id=enemy_id,
            position=Position.from_payload(payload.get('position')),
            direction=Position.from_payload(payload.get('direction')),
            alive=alive,
        )

    def to_dict(self):
        return {
            'id': self.id,
            'position': self.position.to_dict(),
            'direction': self.direction.to_dict(),
            'alive': self.alive,
        }


class GameRoom:
    def __init__(self, code):
        self.code = code
        self.lock = threading.Lock()
        self.players = {}  # {player_id: PlayerRecord}, insertion order is join order
        self.host = None
        self.game_state = {
            'enemies': [],  # [EnemyState]
        }
        self.created_at = time.time()
        self.last_activity = time.time()

    def touch(self):
        self.last_activity = time.time()
