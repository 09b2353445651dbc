from __future__ import annotations

import json
import random
import unittest

from deskchat.config import Settings
from deskchat.errors import IdentityError
from deskchat.events import PeerListChanged
from deskchat.identity.local import LocalIdentity
from deskchat.network.discovery import DiscoveryService, DiscoveryState
from deskchat.network.peer_table import PeerTable
from fakes import FakeClock, FakeDatagramTransport, ManualScheduler


def announce(peer_id: str, username: str = 'bob', port: int = 40001, ip: str = '10.9.9.9') -> bytes:
    return json.dumps({'id': peer_id, 'username': username, 'ip': ip, 'port': port}).encode()


class DiscoveryTest(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.settings = Settings(
            announce_interval=3.0,
            membership_timeout=10.0,
            bootstrap_jitter_min=0.2,
            bootstrap_jitter_max=0.2,
            echo_delay=0.1,
        )
        self.clock = FakeClock()
        self.scheduler = ManualScheduler(self.clock)
        self.identity = LocalIdentity('a1', ip='192.168.1.10')
        self.identity.set_username('alice')
        self.identity.port = 40000
        self.table = PeerTable('a1', timeout=self.settings.membership_timeout, clock=self.clock)
        self.events: list = []
        self.transport = FakeDatagramTransport()
        self.service = DiscoveryService(
            self.identity,
            self.table,
            self.settings,
            scheduler=self.scheduler,
            on_event=self.events.append,
            rng=random.Random(7),
        )
        await self.service.start(transport=self.transport)

    def announces_sent(self) -> int:
        return len(self.transport.sent)

    async def test_start_requires_username(self) -> None:
        ident = LocalIdentity('z1', ip='10.0.0.1')
        ident.port = 40000
        service = DiscoveryService(ident, PeerTable('z1'), self.settings, scheduler=self.scheduler)
        with self.assertRaises(IdentityError):
            await service.start(transport=FakeDatagramTransport())
        self.assertIs(service.state, DiscoveryState.IDLE)

    async def test_bootstrap_announce_after_jitter_then_periodic(self) -> None:
        self.assertIs(self.service.state, DiscoveryState.ANNOUNCING)
        self.assertEqual(self.announces_sent(), 0)
        self.scheduler.advance(0.2)
        self.assertEqual(self.announces_sent(), 1)
        data, addr = self.transport.sent[0]
        self.assertEqual(addr, ('255.255.255.255', 33333))
        self.assertEqual(json.loads(data), {'id': 'a1', 'username': 'alice', 'ip': '192.168.1.10', 'port': 40000})
        self.scheduler.advance(3.0)
        self.assertEqual(self.announces_sent(), 2)
        self.scheduler.advance(6.0)
        self.assertEqual(self.announces_sent(), 4)

    async def test_new_peer_uses_source_address_and_notifies(self) -> None:
        self.service.handle_datagram(announce('b1', ip='10.9.9.9'), ('192.168.1.11', 33333))
        peer = self.table.get('b1')
        self.assertEqual((peer.username, peer.ip, peer.port), ('bob', '192.168.1.11', 40001))
        self.assertEqual(len(self.events), 1)
        self.assertIsInstance(self.events[0], PeerListChanged)
        self.assertEqual([p.id for p in self.events[0].peers], ['b1'])

    async def test_first_sighting_triggers_echo_announce(self) -> None:
        self.service.handle_datagram(announce('b1'), ('192.168.1.11', 33333))
        self.scheduler.advance(0.1)
        self.assertEqual(self.announces_sent(), 1)
        # a refresh from a known peer schedules nothing new
        self.service.handle_datagram(announce('b1'), ('192.168.1.11', 33333))
        self.scheduler.advance(0.05)
        self.assertEqual(self.announces_sent(), 1)

    async def test_refresh_does_not_notify_but_move_does(self) -> None:
        self.service.handle_datagram(announce('b1'), ('192.168.1.11', 33333))
        self.service.handle_datagram(announce('b1'), ('192.168.1.11', 33333))
        self.assertEqual(len(self.events), 1)
        self.service.handle_datagram(announce('b1', port=40005), ('192.168.1.11', 33333))
        self.assertEqual(len(self.events), 2)
        self.assertEqual(self.table.get('b1').port, 40005)

    async def test_own_announce_is_ignored_even_from_local_address(self) -> None:
        self.service.handle_datagram(announce('a1', username='alice', port=40000), ('192.168.1.10', 33333))
        self.service.handle_datagram(announce('a1', username='alice', port=40000), ('127.0.0.1', 33333))
        self.assertNotIn('a1', self.table)
        self.assertEqual(self.events, [])

    async def test_malformed_datagram_is_dropped_and_logged(self) -> None:
        self.service.handle_datagram(announce('b1'), ('192.168.1.11', 33333))
        with self.assertLogs('deskchat.network.discovery', level='WARNING') as logs:
            self.service.handle_datagram(b'{"id": 5}', ('192.168.1.12', 33333))
            self.service.handle_datagram(b'garbage', ('192.168.1.12', 33333))
        self.assertEqual(len(logs.records), 2)
        self.assertEqual([p.id for p in self.table.snapshot()], ['b1'])
        self.assertEqual(len(self.events), 1)

    async def test_silent_peer_is_swept_with_one_notification(self) -> None:
        self.service.handle_datagram(announce('b1'), ('192.168.1.11', 33333))
        self.service.handle_datagram(announce('c1', username='carol', port=40002), ('192.168.1.12', 33333))
        self.events.clear()
        # keep c1 alive, let b1 go silent
        for _ in range(3):
            self.scheduler.advance(3.0)
            self.service.handle_datagram(announce('c1', username='carol', port=40002), ('192.168.1.12', 33333))
        self.assertIn('b1', self.table)
        self.scheduler.advance(1.5)
        self.assertNotIn('b1', self.table)
        self.assertIn('c1', self.table)
        self.assertEqual(len(self.events), 1)
        self.assertEqual([p.id for p in self.events[0].peers], ['c1'])

    async def test_peer_present_iff_announced_within_timeout(self) -> None:
        self.service.handle_datagram(announce('b1'), ('192.168.1.11', 33333))
        self.scheduler.advance(9.9)
        self.assertIn('b1', self.table)
        self.scheduler.advance(1.6)
        self.assertNotIn('b1', self.table)

    async def test_stop_closes_socket_and_timers(self) -> None:
        self.service.stop()
        self.assertTrue(self.transport.closed)
        self.assertIs(self.service.state, DiscoveryState.IDLE)
        self.assertEqual(self.scheduler.pending(), [])
        self.service.announce()
        self.assertEqual(self.announces_sent(), 0)


if __name__ == '__main__':
    unittest.main()
