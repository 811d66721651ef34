import asyncio
import unittest

from agent_chat_client.approvals import ApprovalTracker
from agent_chat_client.assembler import MessageAssembler
from agent_chat_client.errors import (
    ChatClientError,
    ProtocolDecodeError,
    StreamConnectionError,
    TurnCancelledError,
    TurnInProgressError,
)
from agent_chat_client.events import TextDelta
from agent_chat_client.transcript import TranscriptStore
from agent_chat_client.turn_driver import (
    OUTCOME_CANCELLED,
    OUTCOME_DONE,
    OUTCOME_ERROR,
    TURN_CLOSED,
    TURN_IDLE,
    TURN_STREAMING,
    TurnDriver,
)
from tests import support

_LOGIN_TURN = support.body(
    support.agent_switch("agent-coordinator", "coordinator"),
    support.message_start("m1"),
    support.text_delta("m1", "收"),
    support.text_delta("m1", "到"),
    support.message_end("m1"),
    support.done(),
)


class TurnDriverTests(unittest.TestCase):
    def _driver(self, opener, *, with_approvals: bool = False):
        store = TranscriptStore("s1")
        assembler = MessageAssembler(store)
        approvals = ApprovalTracker(store, tick_seconds=0.01, clock=support.fixed_clock()) if with_approvals else None
        driver = TurnDriver(assembler, opener, approvals=approvals, clock=support.fixed_clock())
        return store, driver, approvals

    def test_submit_streams_turn_to_done(self) -> None:
        opener = support.FakeOpener(_LOGIN_TURN, chunk_size=7)
        store, driver, _ = self._driver(opener)
        self.assertEqual(TURN_IDLE, driver.state)

        result = asyncio.run(driver.submit("创建登录页面"))

        self.assertTrue(result.ok)
        self.assertEqual(OUTCOME_DONE, driver.outcome)
        self.assertEqual(TURN_CLOSED, driver.state)
        self.assertEqual([("s1", "创建登录页面")], opener.requests)
        self.assertTrue(opener.closed)

        user, assistant = store.messages
        self.assertEqual(result.user_message_id, user.id)
        self.assertEqual("user", user.role)
        self.assertEqual("sent", user.status)
        self.assertTrue(user.optimistic)
        self.assertEqual("创建登录页面", user.content)
        self.assertEqual("m1", assistant.id)
        self.assertEqual("收到", assistant.content)
        self.assertEqual("sent", assistant.status)
        self.assertEqual("coordinator", assistant.agent_role)

    def test_user_message_is_inserted_before_any_bytes(self) -> None:
        opener = support.FakeOpener(_LOGIN_TURN)
        store, driver, _ = self._driver(opener)
        first_seen = []
        store.subscribe(lambda s, e: first_seen.append([m.role for m in s]) if not first_seen else None)

        asyncio.run(driver.submit("hi"))

        self.assertEqual([["user"]], first_seen)

    def test_empty_text_is_rejected(self) -> None:
        store, driver, _ = self._driver(support.FakeOpener())
        with self.assertRaises(ValueError):
            asyncio.run(driver.submit("   "))
        self.assertEqual(0, len(store))

    def test_second_submit_while_streaming_is_rejected(self) -> None:
        opener = support.FakeOpener(support.body(support.message_start("m1")), hang=True)
        store, driver, _ = self._driver(opener)

        async def run():
            first = asyncio.create_task(driver.submit("one"))
            while driver.state != TURN_STREAMING:
                await asyncio.sleep(0)
            with self.assertRaises(TurnInProgressError):
                await driver.submit("two")
            driver.cancel()
            return await first

        result = asyncio.run(run())

        self.assertEqual(OUTCOME_CANCELLED, result.outcome)
        self.assertEqual(1, len(opener.requests))
        self.assertEqual(["one"], [m.content for m in store if m.role == "user"])

    def test_cancel_finalizes_open_message_and_stops_countdowns(self) -> None:
        opener = support.FakeOpener(
            support.body(
                support.message_start("m1"),
                support.text_delta("m1", "正在"),
                support.approval_request("m1", "a1"),
            ),
            hang=True,
        )
        store, driver, approvals = self._driver(opener, with_approvals=True)
        notifications = []

        async def run():
            task = asyncio.create_task(driver.submit("push it"))
            while approvals.countdown("a1") is None:
                await asyncio.sleep(0)
            countdown = approvals.countdown("a1")
            self.assertTrue(driver.cancel())
            result = await task
            store.subscribe(lambda s, e: notifications.append(e))
            await countdown.wait_closed()
            await asyncio.sleep(0.05)
            return result, countdown

        result, countdown = asyncio.run(run())

        self.assertEqual(OUTCOME_CANCELLED, result.outcome)
        self.assertIsInstance(result.error, TurnCancelledError)
        self.assertTrue(opener.closed)
        message = store.get("m1")
        self.assertEqual("error", message.status)
        self.assertEqual("cancelled", message.error_kind)
        self.assertFalse(message.retryable)
        self.assertEqual("正在", message.content)
        self.assertEqual("pending", message.approval.status)
        self.assertFalse(countdown.is_running)
        self.assertIsNone(approvals.countdown("a1"))
        self.assertEqual([], notifications)
        self.assertFalse(driver.cancel())

    def test_connection_drop_marks_message_retryable(self) -> None:
        opener = support.FakeOpener(
            support.body(support.message_start("m1"), support.text_delta("m1", "half")),
            fail_with=support.connection_drop(),
        )
        store, driver, _ = self._driver(opener)

        result = asyncio.run(driver.submit("go"))

        self.assertEqual(OUTCOME_ERROR, result.outcome)
        self.assertIsInstance(result.error, StreamConnectionError)
        message = store.get("m1")
        self.assertEqual("error", message.status)
        self.assertEqual("connection", message.error_kind)
        self.assertTrue(message.retryable)
        self.assertEqual("half", message.content)
        self.assertFalse(driver.is_busy)

    def test_connection_refused_before_stream(self) -> None:
        opener = support.FakeOpener(open_error=StreamConnectionError("Could not open stream", status_code=503))
        store, driver, _ = self._driver(opener)

        result = asyncio.run(driver.submit("go"))

        self.assertEqual(OUTCOME_ERROR, result.outcome)
        self.assertEqual(503, result.error.status_code)
        self.assertEqual(1, len(store))

    def test_stream_closing_without_done_is_a_connection_error(self) -> None:
        opener = support.FakeOpener(support.body(support.message_start("m1")))
        store, driver, _ = self._driver(opener)

        result = asyncio.run(driver.submit("go"))

        self.assertIsInstance(result.error, StreamConnectionError)
        self.assertEqual("connection", store.get("m1").error_kind)

    def test_malformed_frame_keeps_prior_state(self) -> None:
        payload = support.body(support.message_start("m1"), support.text_delta("m1", "kept")) + b"data: {broken\n\n"
        opener = support.FakeOpener(payload + support.body(support.text_delta("m1", "lost"), support.done()))
        store, driver, _ = self._driver(opener)

        result = asyncio.run(driver.submit("go"))

        self.assertEqual(OUTCOME_ERROR, result.outcome)
        self.assertIsInstance(result.error, ProtocolDecodeError)
        message = store.get("m1")
        self.assertEqual("kept", message.content)
        self.assertEqual("protocol", message.error_kind)

    def test_server_error_event_ends_turn_with_error(self) -> None:
        opener = support.FakeOpener(
            support.body(support.message_start("m1"), support.text_delta("m1", "x"), support.error("quota exceeded"))
        )
        store, driver, _ = self._driver(opener)

        result = asyncio.run(driver.submit("go"))

        self.assertEqual(OUTCOME_ERROR, result.outcome)
        self.assertIsInstance(result.error, ChatClientError)
        self.assertIn("quota exceeded", str(result.error))
        self.assertEqual("stream", store.get("m1").error_kind)

    def test_done_with_open_message_finalizes_it(self) -> None:
        opener = support.FakeOpener(support.body(support.message_start("m1"), support.done()))
        store, driver, _ = self._driver(opener)

        result = asyncio.run(driver.submit("go"))

        self.assertTrue(result.ok)
        self.assertEqual("protocol", store.get("m1").error_kind)

    def test_frames_after_done_are_not_read(self) -> None:
        opener = support.FakeOpener(support.body(support.done(), support.message_start("late")))
        store, driver, _ = self._driver(opener)

        asyncio.run(driver.submit("go"))

        self.assertNotIn("late", store)

    def test_new_turn_allowed_after_failure(self) -> None:
        opener = support.FakeOpener(support.body(support.error("boom")))
        store, driver, _ = self._driver(opener)

        async def run():
            first = await driver.submit("one")
            second = await driver.submit("two")
            return first, second

        first, second = asyncio.run(run())

        self.assertEqual(OUTCOME_ERROR, first.outcome)
        self.assertEqual(OUTCOME_ERROR, second.outcome)
        self.assertEqual(2, len(opener.requests))
        self.assertEqual(2, len(store))

    def test_failing_observer_does_not_stall_the_turn(self) -> None:
        opener = support.FakeOpener(
            support.body(
                support.message_start("m1"),
                support.text_delta("m1", "ok"),
                support.message_end("m1"),
                support.done(),
            )
        )
        store, driver, _ = self._driver(opener)

        def explode(_store, event):
            if isinstance(event, TextDelta):
                raise RuntimeError("render failed")

        store.subscribe(explode)

        async def run():
            first = await driver.submit("one")
            second = await driver.submit("two")
            return first, second

        first, second = asyncio.run(run())

        self.assertTrue(first.ok)
        self.assertTrue(second.ok)
        self.assertEqual(TURN_CLOSED, driver.state)
        self.assertEqual("ok", store.get("m1").content)
        self.assertEqual("sent", store.get("m1").status)

    def test_unexpected_stream_failure_closes_turn(self) -> None:
        opener = support.FakeOpener(
            support.body(support.message_start("m1"), support.text_delta("m1", "half")),
            fail_with=RuntimeError("decoder exploded"),
        )
        store, driver, _ = self._driver(opener)

        async def run():
            first = await driver.submit("one")
            state_after_first = driver.state
            second = await driver.submit("two")
            return first, state_after_first, second

        first, state_after_first, second = asyncio.run(run())

        self.assertEqual(OUTCOME_ERROR, first.outcome)
        self.assertIsInstance(first.error, ChatClientError)
        self.assertIsInstance(first.error.__cause__, RuntimeError)
        self.assertEqual(TURN_CLOSED, state_after_first)
        message = store.get("m1")
        self.assertEqual("error", message.status)
        self.assertEqual("connection", message.error_kind)
        self.assertEqual("half", message.content)
        self.assertEqual(OUTCOME_ERROR, second.outcome)
        self.assertEqual(2, len(opener.requests))

    def test_cancel_after_done_keeps_completed_outcome(self) -> None:
        opener = support.FakeOpener(
            support.body(
                support.message_start("m1"),
                support.text_delta("m1", "完成"),
                support.message_end("m1"),
                support.message_start("m2"),
                support.done(),
            ),
            close_delay=0.05,
        )
        store, driver, _ = self._driver(opener)

        async def run():
            task = asyncio.create_task(driver.submit("go"))
            while not opener.closing:
                await asyncio.sleep(0)
            cancelled = driver.cancel()
            return cancelled, await task

        cancelled, result = asyncio.run(run())

        self.assertFalse(cancelled)
        self.assertEqual(OUTCOME_DONE, result.outcome)
        self.assertEqual(OUTCOME_DONE, driver.outcome)
        self.assertEqual("sent", store.get("m1").status)
        self.assertEqual("protocol", store.get("m2").error_kind)


if __name__ == "__main__":
    unittest.main()
