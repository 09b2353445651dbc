from __future__ import annotations

import dataclasses
import unittest

from deskchat.network.peer_table import PeerInfo, PeerTable, Upsert
from fakes import FakeClock


class PeerTableTest(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = FakeClock()
        self.table = PeerTable('me', timeout=10.0, clock=self.clock)

    def test_own_id_is_never_a_member(self) -> None:
        self.assertIs(self.table.upsert('me', 'myself', '127.0.0.1', 40000), Upsert.IGNORED)
        self.assertNotIn('me', self.table)
        self.assertEqual(len(self.table), 0)

    def test_upsert_reports_added_refreshed_updated(self) -> None:
        self.assertIs(self.table.upsert('b1', 'bob', '10.0.0.2', 40001), Upsert.ADDED)
        self.assertIs(self.table.upsert('b1', 'bob', '10.0.0.2', 40001), Upsert.REFRESHED)
        self.assertIs(self.table.upsert('b1', 'bob', '10.0.0.9', 40001), Upsert.UPDATED)
        self.assertEqual(self.table.get('b1').ip, '10.0.0.9')
        self.assertEqual(len(self.table), 1)

    def test_last_seen_is_set_at_upsert_time(self) -> None:
        self.table.upsert('b1', 'bob', '10.0.0.2', 40001)
        first = self.table.get('b1')
        self.clock.now += 4
        self.table.upsert('b1', 'bob', '10.0.0.2', 40001)
        second = self.table.get('b1')
        self.assertEqual(first.last_seen, 1000.0)
        self.assertEqual(second.last_seen, 1004.0)

    def test_entries_are_replaced_not_mutated(self) -> None:
        self.table.upsert('b1', 'bob', '10.0.0.2', 40001)
        snapshot = self.table.get('b1')
        self.table.upsert('b1', 'bob', '10.0.0.3', 40002)
        self.assertEqual((snapshot.ip, snapshot.port), ('10.0.0.2', 40001))
        with self.assertRaises(dataclasses.FrozenInstanceError):
            snapshot.ip = 'x'  # type: ignore[misc]

    def test_remove_dead_only_past_timeout(self) -> None:
        self.table.upsert('b1', 'bob', '10.0.0.2', 40001)
        self.clock.now += 5
        self.table.upsert('c1', 'carol', '10.0.0.3', 40002)
        self.clock.now += 5
        self.assertEqual(self.table.remove_dead(), [])
        self.clock.now += 0.5
        dead = self.table.remove_dead()
        self.assertEqual([p.id for p in dead], ['b1'])
        self.assertEqual([p.id for p in self.table.snapshot()], ['c1'])

    def test_alive_matches_timeout_window(self) -> None:
        self.table.upsert('b1', 'bob', '10.0.0.2', 40001)
        self.clock.now += 10
        self.assertEqual(len(self.table.alive()), 1)
        self.clock.now += 1
        self.assertEqual(self.table.alive(), [])

    def test_remove_and_find(self) -> None:
        self.table.upsert('abc123', 'bob', '10.0.0.2', 40001)
        self.table.upsert('abd456', 'carol', '10.0.0.3', 40002)
        self.assertEqual(len(self.table.find('ab')), 2)
        self.assertEqual([p.username for p in self.table.find('abd')], ['carol'])
        removed = self.table.remove('abc123')
        self.assertIsInstance(removed, PeerInfo)
        self.assertIsNone(self.table.remove('abc123'))
        self.assertNotIn('abc123', self.table)


if __name__ == '__main__':
    unittest.main()
