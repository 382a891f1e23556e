import asyncio
import unittest

from graph_agent_console.correlation import CorrelationRouter, SalienceClassifier
from graph_agent_console.sessions import SessionStore
from graph_agent_console.streams import (
    ChannelState,
    ErrorEvent,
    ExitEvent,
    OutputChannelManager,
    OutputEvent,
    ReconnectPolicy,
)
from tests.streams.fakes import FakeConnector, RecordingSleep, settle


def _output(stream_id: str, *lines: str, kind: str = "stdout") -> OutputEvent:
    return OutputEvent(stream_id=stream_id, kind=kind, lines=tuple(lines))


class SalienceClassifierTests(unittest.TestCase):
    def test_default_markers(self) -> None:
        classifier = SalienceClassifier()
        self.assertTrue(classifier.is_salient("🎯 Final Answer: 42"))
        self.assertTrue(classifier.is_salient("step ✅ done"))
        self.assertTrue(classifier.is_salient("❌ failed"))
        self.assertTrue(classifier.is_salient("🔄 retrying"))
        self.assertFalse(classifier.is_salient("Thinking..."))
        self.assertFalse(classifier.is_salient("   "))

    def test_custom_markers_replace_defaults(self) -> None:
        classifier = SalienceClassifier(["ANSWER:", ""])
        self.assertEqual(("ANSWER:",), classifier.markers)
        self.assertTrue(classifier.is_salient("ANSWER: yes"))
        self.assertFalse(classifier.is_salient("🎯 Final Answer: 42"))


class CorrelationRouterTests(unittest.TestCase):
    def setUp(self) -> None:
        self._store = SessionStore(None)
        self._channel = OutputChannelManager(FakeConnector())
        self._router = CorrelationRouter(self._store, self._channel)

    def test_successful_run_lands_in_the_launching_session(self) -> None:
        async def scenario() -> None:
            session = self._store.create_session()
            await self._router.track("p1", session.id)
            self.assertEqual(("p1",), self._channel.active_subscriptions)

            self._channel.handle_event(_output("p1", "Thinking...", "🎯 Final Answer: 42"))
            self._channel.handle_event(ExitEvent(stream_id="p1", code=0))
            self.assertEqual(0, await self._router.wait("p1"))

            stored = self._store.get_session(session.id)
            self.assertEqual(
                ["Thinking...", "🎯 Final Answer: 42", "=== Process exited with code 0 ==="],
                [line.content for line in stored.console],
            )
            self.assertEqual(["stdout", "stdout", "info"], [line.kind for line in stored.console])
            self.assertEqual([("assistant", "🎯 Final Answer: 42")], [(m.role, m.content) for m in stored.messages])
            self.assertFalse(self._router.is_tracking("p1"))

        asyncio.run(scenario())

    def test_failed_run_adds_a_system_message(self) -> None:
        async def scenario() -> None:
            session = self._store.create_session()
            await self._router.track("p1", session.id)
            self._channel.handle_event(ExitEvent(stream_id="p1", code=137))

            stored = self._store.get_session(session.id)
            self.assertEqual(
                [("system", "Process failed with exit code 137. Check console output for details.")],
                [(m.role, m.content) for m in stored.messages],
            )
            self.assertEqual("=== Process exited with code 137 ===", stored.console[-1].content)
            self.assertEqual(137, await self._router.wait("p1"))

        asyncio.run(scenario())

    def test_binding_is_fixed_when_tracking_starts(self) -> None:
        async def scenario() -> None:
            first = self._store.create_session("First")
            await self._router.track("p1", first.id)
            second = self._store.create_session("Second")
            self.assertEqual(second.id, self._store.active_session_id)

            self._channel.handle_event(_output("p1", "✅ done"))

            self.assertEqual(1, len(self._store.get_session(first.id).console))
            self.assertEqual([], self._store.get_session(second.id).console)

        asyncio.run(scenario())

    def test_error_goes_to_stderr_and_keeps_the_binding(self) -> None:
        async def scenario() -> None:
            session = self._store.create_session()
            await self._router.track("p1", session.id)
            self._channel.handle_event(ErrorEvent(stream_id="p1", error="spawn failed"))

            stored = self._store.get_session(session.id)
            self.assertEqual([("stderr", "Error: spawn failed")], [(c.kind, c.content) for c in stored.console])
            self.assertEqual([], stored.messages)
            self.assertTrue(self._router.is_tracking("p1"))

        asyncio.run(scenario())

    def test_answer_split_across_output_events(self) -> None:
        async def scenario() -> None:
            session = self._store.create_session()
            await self._router.track("p1", session.id)

            self._channel.handle_event(_output("p1", "working..."))
            self._channel.handle_event(_output("p1", "🎯 Final Answer: 42"))
            self._channel.handle_event(ExitEvent(stream_id="p1", code=0))
            self.assertEqual(0, await self._router.wait("p1"))

            stored = self._store.get_session(session.id)
            self.assertEqual(
                ["working...", "🎯 Final Answer: 42", "=== Process exited with code 0 ==="],
                [line.content for line in stored.console],
            )
            self.assertEqual([("assistant", "🎯 Final Answer: 42")], [(m.role, m.content) for m in stored.messages])

        asyncio.run(scenario())

    def test_exit_drops_the_buffered_output(self) -> None:
        async def scenario() -> None:
            session = self._store.create_session()
            await self._router.track("p1", session.id)
            self._channel.handle_event(_output("p1", "a", "b"))
            self.assertIn("p1", self._channel.buffered_stream_ids)

            self._channel.handle_event(ExitEvent(stream_id="p1", code=0))

            self.assertNotIn("p1", self._channel.buffered_stream_ids)
            self.assertEqual(3, len(self._store.get_session(session.id).console))

        asyncio.run(scenario())

    def test_release_drops_the_buffered_output(self) -> None:
        async def scenario() -> None:
            session = self._store.create_session()
            await self._router.track("p1", session.id)
            self._channel.handle_event(_output("p1", "a"))

            await self._router.release("p1")

            self.assertEqual((), self._channel.buffered_stream_ids)

        asyncio.run(scenario())

    def test_error_answers_the_wait_and_a_later_exit_still_lands(self) -> None:
        async def scenario() -> None:
            session = self._store.create_session()
            await self._router.track("p1", session.id)
            waiter = asyncio.create_task(self._router.wait("p1"))
            await asyncio.sleep(0)

            self._channel.handle_event(ErrorEvent(stream_id="p1", error="tool crashed"))
            self.assertIsNone(await waiter)
            self.assertTrue(self._router.is_tracking("p1"))
            self.assertEqual(("p1",), self._channel.active_subscriptions)

            self._channel.handle_event(ExitEvent(stream_id="p1", code=2))

            stored = self._store.get_session(session.id)
            self.assertEqual(
                ["Error: tool crashed", "=== Process exited with code 2 ==="],
                [line.content for line in stored.console],
            )
            self.assertEqual(2, await self._router.wait("p1"))
            self.assertFalse(self._router.is_tracking("p1"))

        asyncio.run(scenario())

    def test_wait_is_answered_when_the_channel_gives_up(self) -> None:
        async def scenario() -> None:
            connector = FakeConnector()
            channel = OutputChannelManager(
                connector,
                reconnect_policy=ReconnectPolicy(max_attempts=2),
                sleep=RecordingSleep(),
            )
            router = CorrelationRouter(self._store, channel)
            session = self._store.create_session()
            await channel.connect()
            await router.track("p1", session.id)
            waiter = asyncio.create_task(router.wait("p1"))
            await asyncio.sleep(0)

            connector.failures = 100
            connector.latest.drop()
            await settle(waiter.done)

            self.assertEqual(ChannelState.GAVE_UP, channel.state)
            self.assertIsNone(await waiter)
            # Nothing can arrive until a reconnect, so a fresh wait does not block.
            self.assertIsNone(await router.wait("p1"))
            self.assertTrue(router.is_tracking("p1"))
            await channel.teardown()

        asyncio.run(scenario())

    def test_wait_is_answered_on_teardown(self) -> None:
        async def scenario() -> None:
            session = self._store.create_session()
            await self._router.track("p1", session.id)
            waiter = asyncio.create_task(self._router.wait("p1"))
            await asyncio.sleep(0)

            await self._channel.teardown()

            self.assertIsNone(await waiter)

        asyncio.run(scenario())

    def test_stderr_output_keeps_its_kind(self) -> None:
        async def scenario() -> None:
            session = self._store.create_session()
            await self._router.track("p1", session.id)
            self._channel.handle_event(_output("p1", "warning", kind="stderr"))
            self.assertEqual("stderr", self._store.get_session(session.id).console[0].kind)

        asyncio.run(scenario())

    def test_events_after_session_delete_are_dropped(self) -> None:
        async def scenario() -> None:
            session = self._store.create_session()
            await self._router.track("p1", session.id)
            self._store.delete(session.id)

            self._channel.handle_event(_output("p1", "🎯 Final Answer: late"))
            self._channel.handle_event(ExitEvent(stream_id="p1", code=1))

            self.assertIsNone(self._store.get_session(session.id))
            self.assertEqual([], self._store.list_sessions())
            self.assertEqual(1, await self._router.wait("p1"))

        asyncio.run(scenario())

    def test_untracked_streams_are_ignored(self) -> None:
        session = self._store.create_session()
        self._channel.handle_event(_output("other", "🎯 Final Answer: 1"))
        self._channel.handle_event(ExitEvent(stream_id="other", code=0))
        self.assertEqual([], self._store.get_session(session.id).console)

    def test_release_cancels_the_wait(self) -> None:
        async def scenario() -> None:
            session = self._store.create_session()
            await self._router.track("p1", session.id)
            waiter = asyncio.create_task(self._router.wait("p1"))
            await asyncio.sleep(0)

            await self._router.release("p1")

            self.assertIsNone(await waiter)
            self.assertEqual((), self._channel.active_subscriptions)
            self.assertIsNone(await self._router.wait("p1"))

        asyncio.run(scenario())


if __name__ == "__main__":
    unittest.main()
