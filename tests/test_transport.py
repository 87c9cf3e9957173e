import asyncio
import json
import unittest

from candlefeed.events import (
    CONNECTED,
    DISCONNECTED,
    MAX_RECONNECT_ATTEMPTS_REACHED,
    STATE_CHANGED,
    EventEmitter,
)
from candlefeed.models.market import StreamKey, Subscription
from candlefeed.transport.manager import ConnectionState, TransportManager, backoff_delay

from helpers import (
    T0,
    FakeConnector,
    FakeProvider,
    StubPoller,
    fast_settings,
    kline_frame,
    wait_until,
)

KEY = StreamKey("BTCUSDT", "1m")


class RecordingTransport(TransportManager):
    """Remembers every reconnect delay it schedules."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.delays = []

    def _schedule_reconnect(self, delay):
        self.delays.append(delay)
        super()._schedule_reconnect(delay)


class TestBackoff(unittest.TestCase):
    def test_delay_formula(self):
        for n in range(1, 9):
            self.assertAlmostEqual(backoff_delay(n, 2.0, 1.5), 2.0 * 1.5 ** (n - 1))
        self.assertEqual(backoff_delay(1, 2.0, 1.5), 2.0)
        self.assertAlmostEqual(backoff_delay(8, 2.0, 1.5), 34.171875)


class TestTransportManager(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.registry = {}
        self.updates = []
        self.emitter = EventEmitter()
        self.states = []
        self.events = []
        self.emitter.on(STATE_CHANGED, lambda old, new: self.states.append(new))
        for name in (CONNECTED, DISCONNECTED, MAX_RECONNECT_ATTEMPTS_REACHED):
            self.emitter.on(name, lambda name=name: self.events.append(name))
        self.poller = StubPoller()
        self.transport = None

    async def asyncTearDown(self):
        if self.transport is not None:
            await self.transport.close()

    def make(self, connector, provider=None, **overrides):
        self.transport = RecordingTransport(
            provider=provider or FakeProvider(),
            registry=self.registry,
            on_update=self.updates.append,
            emitter=self.emitter,
            settings=fast_settings(**overrides),
            poller=self.poller,
            connector=connector,
        )
        return self.transport

    async def test_connect_resubscribes_registry_and_heartbeats(self):
        self.registry[KEY] = Subscription(key=KEY)
        connector = FakeConnector()
        transport = self.make(connector)

        transport.connect()
        await wait_until(lambda: transport.state is ConnectionState.CONNECTED)
        await wait_until(lambda: connector.last.pings >= 2)

        self.assertEqual(connector.urls, ["ws://primary"])
        self.assertEqual(connector.last.sent[0]["method"], "SUBSCRIBE")
        self.assertEqual(connector.last.sent[0]["params"], ["btcusdt@kline_1m"])
        self.assertEqual(self.events, [CONNECTED])
        self.assertEqual(self.poller.stops, 1)

    async def test_connect_is_idempotent(self):
        connector = FakeConnector()
        transport = self.make(connector)

        transport.connect()
        transport.connect()
        await wait_until(lambda: transport.is_connected)
        transport.connect()
        await asyncio.sleep(0.02)

        self.assertEqual(len(connector.urls), 1)

    async def test_frames_become_updates_and_bad_frames_are_dropped(self):
        connector = FakeConnector()
        transport = self.make(connector)
        transport.connect()
        await wait_until(lambda: transport.is_connected)

        ws = connector.last
        ws.feed("not json at all")
        ws.feed('{"result": null, "id": 1}')
        ws.feed('{"e": "kline", "k": {"s": "BTCUSDT"}}')
        ws.feed(kline_frame("BTCUSDT", "1m", T0, 42000.0, is_final=True))
        await wait_until(lambda: len(self.updates) == 1)

        self.assertEqual(transport.malformed_frames, 2)
        self.assertTrue(transport.is_connected)
        upd = self.updates[0]
        self.assertEqual(upd.key, KEY)
        self.assertEqual(upd.candle.c, 42000.0)
        self.assertTrue(upd.is_final)

    async def test_out_of_range_timestamps_are_dropped_without_reconnecting(self):
        connector = FakeConnector()
        transport = self.make(connector)
        transport.connect()
        await wait_until(lambda: transport.is_connected)
        states_after_open = list(self.states)

        ws = connector.last
        huge = json.loads(kline_frame("BTCUSDT", "1m", T0, 42000.0))
        huge["k"]["t"] = 10 ** 30
        ws.feed(json.dumps(huge))
        not_finite = json.loads(kline_frame("BTCUSDT", "1m", T0, 42000.0))
        not_finite["k"]["t"] = float("inf")
        ws.feed(json.dumps(not_finite))
        ws.feed(kline_frame("BTCUSDT", "1m", T0, 42001.0))
        await wait_until(lambda: len(self.updates) == 1)

        self.assertEqual(transport.malformed_frames, 2)
        self.assertTrue(transport.is_connected)
        self.assertEqual(self.states, states_after_open)
        self.assertEqual(self.events, [CONNECTED])
        self.assertEqual(len(connector.sockets), 1)
        self.assertFalse(ws.closed)
        self.assertEqual(self.updates[0].candle.c, 42001.0)

    async def test_decoder_bug_counts_as_malformed_frame(self):
        class BrokenDecoder(FakeProvider):
            def decode_message(self, raw):
                if raw == "boom":
                    raise RuntimeError("decoder bug")
                return super().decode_message(raw)

        connector = FakeConnector()
        transport = self.make(connector, provider=BrokenDecoder())
        transport.connect()
        await wait_until(lambda: transport.is_connected)

        with self.assertLogs("transport", level="WARNING"):
            connector.last.feed("boom")
            connector.last.feed(kline_frame("BTCUSDT", "1m", T0, 42000.0))
            await wait_until(lambda: len(self.updates) == 1)

        self.assertEqual(transport.malformed_frames, 1)
        self.assertTrue(transport.is_connected)
        self.assertEqual(len(connector.sockets), 1)

    async def test_unanswered_heartbeat_closes_socket_and_reconnects(self):
        connector = FakeConnector(answer_pings=False)
        transport = self.make(connector)
        transport.connect()
        await wait_until(lambda: transport.is_connected)
        first = connector.last

        await wait_until(lambda: len(connector.sockets) >= 2)

        self.assertTrue(first.closed)
        self.assertGreaterEqual(first.pings, 1)
        self.assertGreaterEqual(transport.missed_heartbeats, 1)
        self.assertEqual(transport.heartbeats, 0)
        self.assertEqual(self.events[:2], [CONNECTED, DISCONNECTED])
        self.assertIn(ConnectionState.RECONNECTING, self.states)

    async def test_answered_heartbeats_keep_the_connection(self):
        connector = FakeConnector()
        transport = self.make(connector)
        transport.connect()
        await wait_until(lambda: transport.heartbeats >= 3)

        self.assertEqual(transport.missed_heartbeats, 0)
        self.assertEqual(len(connector.sockets), 1)
        self.assertTrue(transport.is_connected)

    async def test_subscribe_and_unsubscribe_send_directives_when_connected(self):
        connector = FakeConnector()
        transport = self.make(connector)

        # Not connected yet: subscribe only triggers a connection.
        await transport.subscribe(KEY)
        await wait_until(lambda: transport.is_connected)
        self.assertEqual(connector.last.sent, [])

        await transport.subscribe(KEY)
        await transport.unsubscribe(KEY)
        self.assertEqual([m["method"] for m in connector.last.sent], ["SUBSCRIBE", "UNSUBSCRIBE"])

    async def test_unsubscribe_while_disconnected_is_silent(self):
        transport = self.make(FakeConnector())
        await transport.unsubscribe(KEY)
        self.assertEqual(transport.state, ConnectionState.DISCONNECTED)

    async def test_drop_reconnects_and_resubscribes(self):
        self.registry[KEY] = Subscription(key=KEY)
        connector = FakeConnector()
        transport = self.make(connector)
        transport.connect()
        await wait_until(lambda: transport.is_connected)

        connector.last.drop()
        await wait_until(lambda: len(connector.sockets) == 2 and transport.is_connected)

        self.assertEqual(self.events, [CONNECTED, DISCONNECTED, CONNECTED])
        self.assertEqual(transport.reconnect_attempts, 0)
        self.assertEqual(transport.delays, [0.001])
        self.assertEqual(connector.last.sent[0]["params"], ["btcusdt@kline_1m"])
        self.assertIn(ConnectionState.RECONNECTING, self.states)
        # The dropped socket is closed, not leaked.
        self.assertTrue(connector.sockets[0].closed)

    async def test_nine_failures_end_in_polling_fallback(self):
        connector = FakeConnector(fail_times=10 ** 6)
        transport = self.make(connector)

        transport.connect()
        await wait_until(lambda: transport.state is ConnectionState.POLLING_FALLBACK)

        self.assertEqual(len(connector.urls), 9)
        self.assertEqual(len(transport.delays), 8)
        for n, delay in enumerate(transport.delays, start=1):
            self.assertAlmostEqual(delay, 0.001 * 1.5 ** (n - 1))
        self.assertEqual(self.events, [MAX_RECONNECT_ATTEMPTS_REACHED])
        self.assertEqual(self.poller.starts, 1)
        self.assertEqual(self.states[-1], ConnectionState.POLLING_FALLBACK)

        # Terminal: connect() does nothing more.
        transport.connect()
        await asyncio.sleep(0.05)
        self.assertEqual(len(connector.urls), 9)
        self.assertIs(transport.state, ConnectionState.POLLING_FALLBACK)

    async def test_endpoints_rotate_between_attempts(self):
        connector = FakeConnector(fail_times=2)
        transport = self.make(connector)

        transport.connect()
        await wait_until(lambda: transport.is_connected)

        self.assertEqual(connector.urls, ["ws://primary", "ws://secondary", "ws://primary"])

    async def test_initial_connect_timeout_goes_straight_to_fallback(self):
        connector = FakeConnector(hang=True)
        transport = self.make(connector, connect_timeout_seconds=0.02)

        transport.connect()
        await wait_until(lambda: transport.state is ConnectionState.POLLING_FALLBACK)

        self.assertEqual(len(connector.urls), 1)
        self.assertEqual(transport.delays, [])
        self.assertEqual(self.poller.starts, 1)

    async def test_retry_push_from_fallback(self):
        connector = FakeConnector(hang=True)
        transport = self.make(connector, connect_timeout_seconds=0.02)
        transport.connect()
        await wait_until(lambda: transport.state is ConnectionState.POLLING_FALLBACK)

        connector.hang = False
        transport.retry_push()
        await wait_until(lambda: transport.is_connected)

        self.assertEqual(self.poller.stops, 1)
        self.assertEqual(self.events, [CONNECTED])

    async def test_close_cancels_everything(self):
        connector = FakeConnector()
        transport = self.make(connector)
        transport.connect()
        await wait_until(lambda: transport.is_connected)
        ws = connector.last

        await transport.close()
        await asyncio.sleep(0.05)

        self.assertTrue(ws.closed)
        self.assertIs(transport.state, ConnectionState.DISCONNECTED)
        self.assertEqual(len(connector.urls), 1)
        self.assertEqual(self.events, [CONNECTED, DISCONNECTED])
        self.assertIsNone(transport._reconnect_handle)
        self.assertIsNone(transport._heartbeat_task)

    async def test_close_during_backoff_stops_reconnects(self):
        connector = FakeConnector(fail_times=10 ** 6)
        transport = self.make(connector, reconnect_base_delay_seconds=0.2)
        transport.connect()
        await wait_until(lambda: transport.state is ConnectionState.RECONNECTING)

        await transport.close()
        await asyncio.sleep(0.3)

        self.assertEqual(len(connector.urls), 1)
        self.assertIs(transport.state, ConnectionState.DISCONNECTED)


if __name__ == "__main__":
    unittest.main()
