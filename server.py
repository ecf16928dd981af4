import argparse
import logging
import threading

from flask import Flask, jsonify, request
from flask_socketio import SocketIO

from config import Config
from models import EnemyState, MalformedPayload, Transform
from registry import SessionRegistry

logger = logging.getLogger(__name__)


def _parse_seq(data):
    seq = data.get('seq')
    if seq is None:
        return None
    if isinstance(seq, bool) or not isinstance(seq, int):
        raise MalformedPayload(f"seq must be an integer, got {seq!r}")
    return seq


def _parse_weapon(data):
    weapon = data.get('weapon')
    if not isinstance(weapon, str):
        raise MalformedPayload(f"weapon must be a string, got {weapon!r}")
    return weapon


def _parse_vector(data, key):
    # Shot origin/direction are relayed, not stored, but still must be well formed
    value = data.get(key)
    if not isinstance(value, dict):
        raise MalformedPayload(f"missing field {key!r}")
    for axis in ('x', 'y', 'z'):
        if isinstance(value.get(axis), bool) or not isinstance(value.get(axis), (int, float)):
            raise MalformedPayload(f"{key}.{axis} must be a number")
    return {axis: float(value[axis]) for axis in ('x', 'y', 'z')}


class RoomLocks:
    """Striped locks serialising membership changes and their broadcasts per room."""

    def __init__(self, stripes=64):
        self._locks = [threading.Lock() for _ in range(stripes)]

    def for_room(self, room_id):
        return self._locks[hash(room_id) % len(self._locks)]


class ConnectionHandler:
    """Translates one connection's inbound events into registry calls and broadcasts."""

    def __init__(self, sid, registry, socketio, enforce_host=True, room_locks=None):
        self.sid = sid
        self.registry = registry
        self.socketio = socketio
        self.enforce_host = enforce_host
        self.room_locks = room_locks or RoomLocks()
        self.closed = False
        # Events and close for this connection never overlap
        self._lock = threading.Lock()

    def _to_room(self, event, data, room_id):
        self.socketio.emit(event, data, to=room_id, skip_sid=self.sid)

    def _reply(self, event, data):
        self.socketio.emit(event, data, to=self.sid)

    def on_join_room(self, data):
        with self._lock:
            if self.closed:
                return
            if not isinstance(data, dict):
                self._reply('roomError', {'error': 'Invalid join request'})
                return
            room_id = data.get('roomId')
            if not isinstance(room_id, str) or not room_id:
                self._reply('roomError', {'error': 'Room id required'})
                return
            player_name = data.get('playerName')
            if not isinstance(player_name, str) or not player_name:
                player_name = 'Player'

            self._leave_current_room()
            with self.room_locks.for_room(room_id):
                result = self.registry.join(room_id, self.sid, player_name)
                self.socketio.server.enter_room(self.sid, room_id, namespace='/')
                self._reply('roomJoined', {
                    'playerId': self.sid,
                    'roomId': room_id,
                    'isHost': result.is_host,
                    'existingPlayers': [p.to_dict() for p in result.existing_players],
                    'enemies': [e.to_dict() for e in self.registry.enemies(room_id)],
                })
                self._to_room('playerJoined', result.player.to_dict(), room_id)

    def on_player_update(self, data):
        try:
            if not isinstance(data, dict):
                raise MalformedPayload("update payload must be an object")
            transform = Transform.from_payload(data)
            weapon = _parse_weapon(data)
            seq = _parse_seq(data)
        except MalformedPayload as exc:
            logger.warning("Malformed playerUpdate from %s: %s", self.sid, exc)
            return

        with self._lock:
            if self.closed:
                return
            player = self.registry.update_transform(self.sid, transform, weapon, seq)
            if player is None:
                logger.debug("Dropped playerUpdate from %s", self.sid)
                return

            payload = {
                'playerId': self.sid,
                'position': player.position.to_dict(),
                'rotation': player.rotation.to_dict(),
                'weapon': player.weapon,
            }
            if seq is not None:
                payload['seq'] = seq
            self._to_room('playerUpdate', payload, player.room_id)

    def on_player_shoot(self, data):
        try:
            if not isinstance(data, dict):
                raise MalformedPayload("shoot payload must be an object")
            origin = _parse_vector(data, 'origin')
            direction = _parse_vector(data, 'direction')
            weapon = _parse_weapon(data)
        except MalformedPayload as exc:
            logger.warning("Malformed playerShoot from %s: %s", self.sid, exc)
            return

        with self._lock:
            if self.closed:
                return
            room_id = self.registry.room_of(self.sid)
            if room_id is None:
                logger.debug("playerShoot from %s outside any room", self.sid)
                return

            self._to_room('playerShoot', {
                'playerId': self.sid,
                'origin': origin,
                'direction': direction,
                'weapon': weapon,
            }, room_id)

    def on_enemy_update(self, data):
        try:
            if not isinstance(data, dict) or not isinstance(data.get('enemies'), list):
                raise MalformedPayload("enemyUpdate needs an enemies list")
            enemies = [EnemyState.from_payload(e) for e in data['enemies']]
        except MalformedPayload as exc:
            logger.warning("Malformed enemyUpdate from %s: %s", self.sid, exc)
            return

        with self._lock:
            if self.closed:
                return
            if self.enforce_host and not self.registry.is_host(self.sid):
                logger.debug("Ignoring enemyUpdate from non-host %s", self.sid)
                return

            room_id = self.registry.update_enemies(self.sid, enemies)
            if room_id is None:
                return
            self._to_room('enemyUpdate', {'enemies': [e.to_dict() for e in enemies]}, room_id)

    def on_leave_room(self):
        with self._lock:
            if self.closed:
                return
            self._leave_current_room()

    def close(self):
        # Runs once per connection, whatever ended it
        with self._lock:
            if self.closed:
                return
            self.closed = True
            self._leave_current_room()

    def _leave_current_room(self):
        # Caller holds self._lock, so the room cannot change under us
        room_id = self.registry.room_of(self.sid)
        if room_id is None:
            return
        with self.room_locks.for_room(room_id):
            result = self.registry.leave(self.sid)
            if result is None:
                return
            self.socketio.server.leave_room(self.sid, room_id, namespace='/')
            if not result.remaining_player_ids:
                return
            self._to_room('playerLeft', {'playerId': self.sid}, result.room_id)
            if result.new_host is not None:
                self._to_room('hostChanged', {'playerId': result.new_host}, result.room_id)


def create_app(config=None, registry=None):
    config = config or Config()
    registry = registry or SessionRegistry()

    app = Flask(__name__)
    app.config.from_object(config)
    socketio = SocketIO(
        app,
        cors_allowed_origins=config.CORS_ALLOWED_ORIGINS,
        engineio_logger=config.ENGINEIO_LOGGER,
        ping_timeout=config.PING_TIMEOUT,
        ping_interval=config.PING_INTERVAL,
        # One connection's events are handled in arrival order
        async_handlers=False,
    )
    app.extensions['registry'] = registry
    handlers = {}  # {sid: ConnectionHandler}
    room_locks = RoomLocks()

    def current_handler():
        handler = handlers.get(request.sid)
        if handler is None:
            logger.debug("Event from unknown connection %s", request.sid)
        return handler

    # Socket events
    @socketio.on('connect')
    def handle_connect(auth=None):
        logger.info("Client connected: %s", request.sid)
        handlers[request.sid] = ConnectionHandler(
            request.sid, registry, socketio,
            enforce_host=config.ENFORCE_HOST_ENEMY_WRITES,
            room_locks=room_locks,
        )

    @socketio.on('disconnect')
    def handle_disconnect(reason=None):
        logger.info("Client disconnected: %s", request.sid)
        handler = handlers.pop(request.sid, None)
        if handler is not None:
            handler.close()

    @socketio.on('joinRoom')
    def handle_join_room(data=None):
        handler = current_handler()
        if handler:
            handler.on_join_room(data)

    @socketio.on('leaveRoom')
    def handle_leave_room(data=None):
        handler = current_handler()
        if handler:
            handler.on_leave_room()

    @socketio.on('playerUpdate')
    def handle_player_update(data=None):
        handler = current_handler()
        if handler:
            handler.on_player_update(data)

    @socketio.on('playerShoot')
    def handle_player_shoot(data=None):
        handler = current_handler()
        if handler:
            handler.on_player_shoot(data)

    @socketio.on('enemyUpdate')
    def handle_enemy_update(data=None):
        handler = current_handler()
        if handler:
            handler.on_enemy_update(data)

    @socketio.on_error_default
    def handle_error(e):
        logger.exception("Error handling event from %s", request.sid)

    @app.route('/')
    def index():
        return jsonify(registry.stats())

    return app, socketio


def main(argv=None):
    config = Config.from_env()
    parser = argparse.ArgumentParser(description="FPS multiplayer room server")
    parser.add_argument('--host', default=config.HOST)
    parser.add_argument('--port', type=int, default=config.PORT)
    parser.add_argument('--log-level', default=config.LOG_LEVEL)
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)-8s %(name)s | %(message)s",
    )
    app, socketio = create_app(config)
    logger.info("Server running on port %s", args.port)
    socketio.run(app, host=args.host, port=args.port, allow_unsafe_werkzeug=True)


if __name__ == '__main__':
    main()
