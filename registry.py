import copy
import logging
import threading
from dataclasses import dataclass, field

from models import GameRoom, PlayerRecord

logger = logging.getLogger(__name__)


@dataclass
class LeaveResult:
    room_id: str
    remaining_player_ids: list
    # Set when the leaving player was host and someone else took over
    new_host: str | None = None


@dataclass
class JoinResult:
    player: PlayerRecord
    existing_players: list = field(default_factory=list)
    is_host: bool = False
    # Set when the player was moved out of another room by this join
    previous: LeaveResult | None = None


class SessionRegistry:
    def __init__(self):
        # Lock order is registry then room; update paths take only the room lock
        self._lock = threading.Lock()
        self.rooms = {}  # {room_id: GameRoom}
        self.players = {}  # {player_id: PlayerRecord}

    def join(self, room_id, player_id, player_name):
        with self._lock:
            previous = None
            if player_id in self.players:
                previous = self._remove_player(player_id)

            room = self.rooms.get(room_id)
            if room is None:
                room = GameRoom(room_id)
                self.rooms[room_id] = room
                logger.info("Room %s created", room_id)

            with room.lock:
                is_host = not room.players
                existing = [copy.deepcopy(p) for p in room.players.values()]
                player = PlayerRecord(id=player_id, name=player_name, room_id=room_id)
                room.players[player_id] = player
                if is_host:
                    room.host = player_id
                room.touch()
                snapshot = copy.deepcopy(player)

            self.players[player_id] = player

        logger.info("Player %s (%s) joined room %s%s", player_name, player_id, room_id,
                    " as host" if is_host else "")
        return JoinResult(snapshot, existing, is_host, previous)

    def update_transform(self, player_id, transform, weapon, seq=None):
        """Apply a transform update; returns a snapshot or None when dropped."""
        room = self._room_for(player_id)
        if room is None:
            return None

        with room.lock:
            player = room.players.get(player_id)
            # Left (or moved rooms) between the lookup and taking the room lock
            if player is None:
                return None
            if seq is not None and player.seq is not None and seq <= player.seq:
                logger.debug("Dropping stale update %s <= %s from %s", seq, player.seq, player_id)
                return None
            player.transform = transform
            player.weapon = weapon
            if seq is not None:
                player.seq = seq
            room.touch()
            return copy.deepcopy(player)

    def update_enemies(self, player_id, enemies):
        """Replace the room's enemy list; returns the room id or None when dropped."""
        room = self._room_for(player_id)
        if room is None:
            return None

        with room.lock:
            if player_id not in room.players:
                return None
            room.game_state['enemies'] = list(enemies)
            room.touch()
            return room.code

    def leave(self, player_id):
        with self._lock:
            result = self._remove_player(player_id)
        if result is not None:
            logger.info("Player %s left room %s", player_id, result.room_id)
        return result

    def room_of(self, player_id):
        with self._lock:
            player = self.players.get(player_id)
            return player.room_id if player is not None else None

    def is_host(self, player_id):
        room = self._room_for(player_id)
        if room is None:
            return False
        with room.lock:
            return room.host == player_id and player_id in room.players

    def get_room(self, room_id):
        with self._lock:
            return self.rooms.get(room_id)

    def room_ids(self):
        with self._lock:
            return list(self.rooms)

    def enemies(self, room_id):
        room = self.get_room(room_id)
        if room is None:
            return []
        with room.lock:
            return copy.deepcopy(room.game_state['enemies'])

    def member_ids(self, room_id):
        room = self.get_room(room_id)
        if room is None:
            return []
        with room.lock:
            return list(room.players)

    def stats(self):
        with self._lock:
            return {'rooms': len(self.rooms), 'players': len(self.players)}

    def _room_for(self, player_id):
        with self._lock:
            player = self.players.get(player_id)
            if player is None:
                return None
            return self.rooms.get(player.room_id)

    def _remove_player(self, player_id):
        # Caller holds self._lock
        player = self.players.pop(player_id, None)
        if player is None:
            return None

        room = self.rooms.get(player.room_id)
        if room is None:
            return None

        with room.lock:
            room.players.pop(player_id, None)
            remaining = list(room.players)
            new_host = None
            if remaining and room.host == player_id:
                # Earliest remaining joiner takes over
                room.host = next(iter(room.players))
                new_host = room.host
            room.touch()

        if not remaining:
            self.rooms.pop(room.code, None)
            logger.info("Room %s cleaned up", room.code)
        elif new_host is not None:
            logger.info("Host of room %s transferred to %s", room.code, new_host)

        return LeaveResult(room.code, remaining, new_host)
