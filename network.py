import enum
import logging
import queue
import threading
import time
from dataclasses import dataclass

import socketio
from socketio.exceptions import ConnectionError as TransportError

from config import POSITION_UPDATE_INTERVAL

logger = logging.getLogger(__name__)


class ProxyState(enum.Enum):
    DISCONNECTED = 'disconnected'
    CONNECTING = 'connecting'
    CONNECTED = 'connected'
    IN_ROOM = 'in_room'


@dataclass
class NetworkPlayer:
    id: str
    name: str
    position: dict
    rotation: dict
    weapon: str
    # Visual object owned by the rendering layer
    handle: object = None
    seq: int | None = None


class NetworkListener:
    """Rendering layer hooks. Override the ones you need."""

    def on_player_joined(self, player):
        pass

    def on_player_updated(self, player):
        pass

    def on_player_left(self, player):
        pass

    def on_player_shot(self, player, origin, direction, weapon):
        pass

    def on_enemies_updated(self, enemies):
        pass

    def on_host_status_changed(self, is_host):
        pass


VECTOR_KEYS = ('x', 'y', 'z')
ROTATION_KEYS = ('yaw', 'pitch')


def _plain(value, keys=None):
    # Accepts to_dict() objects, mappings, or (x, y, z) / (yaw, pitch) sequences
    if hasattr(value, 'to_dict'):
        return value.to_dict()
    if keys is not None and isinstance(value, (list, tuple)):
        if len(value) != len(keys):
            raise ValueError(f"expected {len(keys)} components, got {len(value)}")
        return dict(zip(keys, value))
    return dict(value)


class NetworkProxy:
    # Inbound events that touch the mirror or the listener
    EVENTS = ('roomJoined', 'roomError', 'playerJoined', 'playerLeft', 'playerUpdate',
              'playerShoot', 'enemyUpdate', 'hostChanged')

    def __init__(self, listener=None, client_factory=None, clock=time.monotonic,
                 update_interval=POSITION_UPDATE_INTERVAL, deliver_inline=True):
        self.listener = listener or NetworkListener()
        self._client_factory = client_factory or socketio.Client
        self._clock = clock
        self.update_interval = update_interval
        self.deliver_inline = deliver_inline

        # Transport callbacks arrive on the socketio thread; callbacks run outside the lock
        self._lock = threading.RLock()
        self._sio = None
        self._inbox = queue.SimpleQueue()
        self.state = ProxyState.DISCONNECTED
        self.player_id = None
        self.room_id = None
        self.player_name = None
        self.is_host = False
        self.network_players = {}  # {player_id: NetworkPlayer}
        self.last_position_update = None
        self._seq = 0

        self._handlers = {
            'roomJoined': self._on_room_joined,
            'roomError': self._on_room_error,
            'playerJoined': self._on_player_joined,
            'playerLeft': self._on_player_left,
            'playerUpdate': self._on_player_update,
            'playerShoot': self._on_player_shoot,
            'enemyUpdate': self._on_enemy_update,
            'hostChanged': self._on_host_changed,
        }

    # Connection lifecycle

    def connect(self, server_url):
        if self._sio is not None:
            self.disconnect()

        sio = self._client_factory()
        self._bind(sio)
        with self._lock:
            self._sio = sio
            self.state = ProxyState.CONNECTING

        try:
            sio.connect(server_url)
        except TransportError as exc:
            logger.error("Failed to connect to %s: %s", server_url, exc)
            self._reset(sio)
            return False

        with self._lock:
            if self._sio is sio and self.state == ProxyState.CONNECTING:
                self.state = ProxyState.CONNECTED
        return True

    def disconnect(self):
        sio = self._sio
        if sio is None:
            return
        self._reset(sio)
        sio.disconnect()

    def _bind(self, sio):
        def on_connect():
            logger.info("Connected to server")
            with self._lock:
                if self._sio is sio and self.state == ProxyState.CONNECTING:
                    self.state = ProxyState.CONNECTED

        def on_disconnect(*args):
            logger.info("Disconnected from server")
            self._reset(sio)

        sio.on('connect', on_connect)
        sio.on('disconnect', on_disconnect)
        for event in self.EVENTS:
            sio.on(event, self._receiver(sio, event))

    def _receiver(self, sio, event):
        def receive(data=None):
            if self.deliver_inline:
                self._apply(sio, event, data)
            else:
                self._inbox.put((sio, event, data))
        return receive

    def _reset(self, sio):
        with self._lock:
            if self._sio is not sio:
                return
            self._sio = None
            self.state = ProxyState.DISCONNECTED
            self.player_id = None
            self.room_id = None
            self.is_host = False
            self.network_players.clear()
            self.last_position_update = None
            self._inbox = queue.SimpleQueue()

    def pump(self):
        """Apply queued inbound events; call once per frame when deliver_inline is off."""
        inbox = self._inbox
        applied = 0
        while True:
            try:
                sio, event, data = inbox.get_nowait()
            except queue.Empty:
                return applied
            self._apply(sio, event, data)
            applied += 1

    def _apply(self, sio, event, data):
        if self._sio is not sio:
            return
        if event != 'roomError' and not isinstance(data, dict):
            logger.warning("Ignoring %s with malformed payload %r", event, data)
            return
        self._handlers[event](sio, data)

    # Outgoing calls

    def join_room(self, room_id, player_name):
        with self._lock:
            if self.state not in (ProxyState.CONNECTED, ProxyState.IN_ROOM):
                logger.error("Not connected to server")
                return False
            sio = self._sio
            departed = self._clear_room()
            self.room_id = room_id
            self.player_name = player_name
            self.state = ProxyState.CONNECTED

        for player in departed:
            self.listener.on_player_left(player)
        sio.emit('joinRoom', {'roomId': room_id, 'playerName': player_name})
        return True

    def leave_room(self):
        with self._lock:
            if self.state != ProxyState.IN_ROOM:
                return False
            sio = self._sio
            departed = self._clear_room()
            self.room_id = None
            self.state = ProxyState.CONNECTED

        sio.emit('leaveRoom')
        for player in departed:
            self.listener.on_player_left(player)
        return True

    def _clear_room(self):
        departed = list(self.network_players.values())
        self.network_players.clear()
        self.is_host = False
        return departed

    def send_player_update(self, position, rotation, weapon):
        try:
            payload = {
                'position': _plain(position, VECTOR_KEYS),
                'rotation': _plain(rotation, ROTATION_KEYS),
                'weapon': weapon,
            }
        except (TypeError, ValueError) as exc:
            logger.warning("Not sending player update: %s", exc)
            return False

        with self._lock:
            if self.state != ProxyState.IN_ROOM:
                return False
            now = self._clock()
            if (self.last_position_update is not None
                    and now - self.last_position_update < self.update_interval):
                return False
            self.last_position_update = now
            self._seq += 1
            payload['seq'] = self._seq
            sio = self._sio

        sio.emit('playerUpdate', payload)
        return True

    def send_shoot_event(self, origin, direction, weapon):
        try:
            payload = {
                'origin': _plain(origin, VECTOR_KEYS),
                'direction': _plain(direction, VECTOR_KEYS),
                'weapon': weapon,
            }
        except (TypeError, ValueError) as exc:
            logger.warning("Not sending shoot event: %s", exc)
            return False

        with self._lock:
            if self.state != ProxyState.IN_ROOM:
                return False
            sio = self._sio

        sio.emit('playerShoot', payload)
        return True

    def send_enemy_update(self, enemies):
        try:
            payload = {'enemies': [_plain(e) for e in enemies]}
        except (TypeError, ValueError) as exc:
            logger.warning("Not sending enemy update: %s", exc)
            return False

        with self._lock:
            if self.state != ProxyState.IN_ROOM or not self.is_host:
                return False
            sio = self._sio

        sio.emit('enemyUpdate', payload)
        return True

    def get_network_players(self):
        with self._lock:
            return list(self.network_players.values())

    def is_multiplayer_active(self):
        return self.state == ProxyState.IN_ROOM

    # Inbound events

    def _mirror(self, data):
        return NetworkPlayer(
            id=data['id'],
            name=data.get('name', ''),
            position=data.get('position', {}),
            rotation=data.get('rotation', {}),
            weapon=data.get('weapon', ''),
        )

    def _on_room_joined(self, sio, data):
        try:
            existing = [self._mirror(p) for p in data.get('existingPlayers', [])]
        except (KeyError, TypeError, AttributeError):
            logger.warning("Malformed roomJoined payload %r", data)
            return

        with self._lock:
            if self._sio is not sio:
                return
            self.player_id = data.get('playerId')
            self.room_id = data.get('roomId', self.room_id)
            self.is_host = bool(data.get('isHost', False))
            added = []
            for player in existing:
                if player.id == self.player_id:
                    continue
                self.network_players[player.id] = player
                added.append(player)
            is_host = self.is_host
        logger.info("Joined room %s as %s", self.room_id, self.player_id)

        for player in added:
            self.listener.on_player_joined(player)
        self.listener.on_host_status_changed(is_host)
        enemies = data.get('enemies')
        if enemies:
            self.listener.on_enemies_updated(enemies)

        with self._lock:
            if self._sio is sio:
                self.state = ProxyState.IN_ROOM

    def _on_room_error(self, sio, data):
        logger.error("Room error: %s", data.get('error') if isinstance(data, dict) else data)
        with self._lock:
            if self._sio is sio and self.state == ProxyState.CONNECTED:
                self.room_id = None

    def _on_player_joined(self, sio, data):
        try:
            player = self._mirror(data)
        except KeyError:
            logger.warning("playerJoined without id: %r", data)
            return

        with self._lock:
            if self._sio is not sio or player.id == self.player_id:
                return
            self.network_players[player.id] = player
        logger.info("Player %s joined", player.name)
        self.listener.on_player_joined(player)

    def _on_player_left(self, sio, data):
        with self._lock:
            if self._sio is not sio:
                return
            player = self.network_players.pop(data.get('playerId'), None)
        if player is not None:
            logger.info("Player %s left", player.id)
            self.listener.on_player_left(player)

    def _on_player_update(self, sio, data):
        seq = data.get('seq')
        if isinstance(seq, bool) or not isinstance(seq, int):
            seq = None
        with self._lock:
            if self._sio is not sio:
                return
            player = self.network_players.get(data.get('playerId'))
            if player is None:
                return
            if seq is not None and player.seq is not None and seq <= player.seq:
                return
            player.position = data.get('position', player.position)
            player.rotation = data.get('rotation', player.rotation)
            player.weapon = data.get('weapon', player.weapon)
            if seq is not None:
                player.seq = seq
        self.listener.on_player_updated(player)

    def _on_player_shoot(self, sio, data):
        with self._lock:
            if self._sio is not sio:
                return
            player = self.network_players.get(data.get('playerId'))
        if player is not None:
            self.listener.on_player_shot(player, data.get('origin'), data.get('direction'),
                                         data.get('weapon'))

    def _on_enemy_update(self, sio, data):
        enemies = data.get('enemies')
        if not isinstance(enemies, list):
            return
        with self._lock:
            if self._sio is not sio:
                return
        self.listener.on_enemies_updated(enemies)

    def _on_host_changed(self, sio, data):
        with self._lock:
            if self._sio is not sio:
                return
            is_host = data.get('playerId') == self.player_id
            if is_host == self.is_host:
                return
            self.is_host = is_host
        self.listener.on_host_status_changed(is_host)
