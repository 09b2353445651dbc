import asyncio
import logging
import os
import sys
import threading
import time
from dataclasses import asdict
from pathlib import Path

from flask import Flask, flash, jsonify, redirect, render_template, request, url_for
from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from deskchat.config import Settings, load_settings
from deskchat.errors import DeskChatError
from deskchat.events import MessageReceived, PeerListChanged
from deskchat.messaging.chat import BROADCAST
from deskchat.node import ChatNode

logger = logging.getLogger(__name__)

app = Flask(__name__, template_folder='templates')
app.secret_key = os.getenv('DESKCHAT_WEB_SECRET', 'deskchat-web-secret')

MESSAGE_LOCK = threading.Lock()
CHAT_MESSAGES: list[dict] = []
MAX_CHAT_MESSAGES = 200
CALL_TIMEOUT = 15.0


def add_chat_message(direction: str, text: str, peer: str = '') -> dict:
    item = {
        'ts': int(time.time() * 1000),
        'direction': direction,
        'peer': peer,
        'text': text,
    }
    with MESSAGE_LOCK:
        CHAT_MESSAGES.append(item)
        if len(CHAT_MESSAGES) > MAX_CHAT_MESSAGES:
            del CHAT_MESSAGES[: len(CHAT_MESSAGES) - MAX_CHAT_MESSAGES]
    return item


def peer_row(peer) -> dict:
    row = asdict(peer)
    row.pop('last_seen', None)
    return row


class NodeBridge:
    """Runs a ChatNode on a private asyncio loop so Flask threads can drive it."""

    def __init__(self):
        self.node: ChatNode | None = None
        self.loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None

    def start(self, settings: Settings) -> int:
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self.loop.run_forever, name='deskchat-node', daemon=True)
        self._thread.start()
        self.node = ChatNode(settings, on_event=self.on_event)
        return self.call(self.node.start())

    def call(self, coro, timeout: float = CALL_TIMEOUT):
        if self.loop is None:
            coro.close()
            raise RuntimeError('Node is not running')
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result(timeout)

    def on_event(self, event) -> None:
        if isinstance(event, MessageReceived):
            add_chat_message('in', event.message, peer=event.sender)
        elif isinstance(event, PeerListChanged):
            add_chat_message('system', f'{len(event.peers)} peer(s) online')

    @property
    def username(self) -> str | None:
        return self.node.identity.username if self.node else None

    def identity(self) -> dict:
        if self.node is None:
            return {}
        ident = self.node.identity
        return {'id': ident.id, 'username': ident.username, 'ip': ident.ip, 'port': ident.port}

    def _require_node(self) -> ChatNode:
        if self.node is None:
            raise RuntimeError('Node is not running')
        return self.node

    def set_username(self, name: str) -> None:
        self.call(self._require_node().set_username(name))

    def peers(self) -> list[dict]:
        if self.node is None:
            return []
        return [peer_row(p) for p in self.node.list_peers()]

    def send(self, peer_id: str, text: str) -> dict[str, bool]:
        target = peer_id or BROADCAST
        return self.call(self._require_node().send_message(target, text))

    def stop(self) -> None:
        if self.loop is None:
            return
        if self.node is not None:
            self.call(self.node.stop())
        self.loop.call_soon_threadsafe(self.loop.stop)
        if self._thread is not None:
            self._thread.join(timeout=3)
        self.loop.close()
        self.loop = None


BRIDGE = NodeBridge()


def flash_status(success: bool, text: str) -> None:
    flash(text, 'success' if success else 'error')


@app.route('/')
def index():
    return render_template(
        'index.html',
        me=BRIDGE.identity(),
        username=BRIDGE.username,
        peers=BRIDGE.peers(),
    )


@app.route('/username', methods=['POST'])
def username():
    name = request.form.get('username', '').strip()
    try:
        BRIDGE.set_username(name)
    except (ValueError, DeskChatError) as exc:
        flash_status(False, str(exc))
        return redirect(url_for('index'))
    add_chat_message('system', f'Joined as {name}')
    flash_status(True, f'Connected as {name}. Looking for peers...')
    return redirect(url_for('index'))


@app.route('/peers', methods=['GET'])
def peers():
    return jsonify({'me': BRIDGE.identity(), 'peers': BRIDGE.peers()})


@app.route('/chat', methods=['POST'])
def chat():
    peer_id = request.form.get('peer_id', '').strip()
    message = request.form.get('message', '')
    try:
        results = BRIDGE.send(peer_id, message)
    except (ValueError, DeskChatError) as exc:
        flash_status(False, str(exc))
        return redirect(url_for('index'))

    add_chat_message('out', message, peer=peer_id or '*')
    if not results:
        flash_status(False, 'No peer online yet.')
    elif all(results.values()):
        flash_status(True, f'Delivered to {len(results)} peer(s).')
    else:
        failed = sum(1 for ok in results.values() if not ok)
        flash_status(False, f'{failed} of {len(results)} peer(s) unreachable and removed.')
    return redirect(url_for('index'))


@app.route('/chat/messages', methods=['GET'])
def chat_messages():
    since = request.args.get('since', 0, type=int)
    with MESSAGE_LOCK:
        items = [m for m in CHAT_MESSAGES if m['ts'] > since]
    return jsonify({'messages': items})


def serve(settings: Settings, host: str = '127.0.0.1', port: int = 5000) -> None:
    node_port = BRIDGE.start(settings)
    logger.info('Web UI on http://%s:%s (messages on TCP %s)', host, port, node_port)
    try:
        app.run(host=host, port=port, debug=False, threaded=True)
    finally:
        BRIDGE.stop()


if __name__ == '__main__':
    load_dotenv(PROJECT_ROOT / '.env')
    settings = load_settings()
    logging.basicConfig(level=settings.log_level, format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')
    serve(settings, port=int(os.getenv('DESKCHAT_WEB_PORT', '5000')))
