import asyncio
import unittest

from agent_chat_client.api_client import ChatApiClient
from agent_chat_client.chat_session import ChatSession
from agent_chat_client.demo_backend import DemoBackend, scripted_turn
from agent_chat_client.errors import ApprovalDecisionError
from agent_chat_client.events import parse_event
from tests import support


def _wire(backend: DemoBackend) -> tuple[ChatApiClient, ChatSession]:
    client = ChatApiClient("http://demo.local/api", transport=backend.transport(), retry_wait_multiplier=0)
    session = ChatSession("s1", client, countdown_tick_seconds=0.01)
    return client, session


class ScriptedTurnTests(unittest.TestCase):
    def test_every_scripted_frame_parses(self) -> None:
        frames = scripted_turn("创建登录页面", now=support.NOW, suffix="x")
        parsed = [parse_event(frame) for _, frame in frames]

        self.assertEqual("agent-switch", parsed[0].type)
        self.assertEqual("done", parsed[-1].type)
        self.assertEqual(1, sum(1 for e in parsed if e.type == "approval-request"))
        self.assertTrue(all(delay >= 0 for delay, _ in frames))


class ChatSessionDemoTests(unittest.TestCase):
    def test_full_turn_then_approve_then_reopen(self) -> None:
        backend = DemoBackend(pacing=0)
        backend.seed_session("s1", "Demo")

        async def run():
            client, session = _wire(backend)
            try:
                await session.open()
                self.assertEqual(0, len(session.store))

                result = await session.send("创建登录页面")
                after_turn = [(m.id, m.role, m.agent_role, m.status) for m in session.store]
                countdown_running = session.approvals.countdown("approval-1").is_running
                tool_statuses = [tc.status for tc in session.tool_calls.all()]

                approval = await session.approve("approval-1")
                countdown_after_decision = session.approvals.countdown("approval-1")

                await session.open()
                reopened = [(m.id, m.role, m.optimistic) for m in session.store]
                restored_tools = [tc.id for tc in session.tool_calls.all()]
                restored_approval = session.approvals.find("approval-1").status
                meta = await session.refresh_metadata()
                return (
                    result,
                    after_turn,
                    countdown_running,
                    tool_statuses,
                    approval,
                    countdown_after_decision,
                    reopened,
                    restored_tools,
                    restored_approval,
                    meta,
                )
            finally:
                await session.close()
                await client.aclose()

        (
            result,
            after_turn,
            countdown_running,
            tool_statuses,
            approval,
            countdown_after_decision,
            reopened,
            restored_tools,
            restored_approval,
            meta,
        ) = asyncio.run(run())

        self.assertTrue(result.ok)
        self.assertEqual(
            [
                ("user", None, "sent"),
                ("assistant", "coordinator", "sent"),
                ("assistant", "frontend", "sent"),
                ("assistant", "frontend", "sent"),
            ],
            [entry[1:] for entry in after_turn],
        )
        self.assertEqual(["stream-coord-1", "stream-front-1", "stream-approve-1"], [e[0] for e in after_turn[1:]])
        self.assertTrue(countdown_running)
        self.assertEqual(["success", "success"], tool_statuses)

        self.assertEqual("approved", approval.status)
        self.assertIsNone(countdown_after_decision)
        self.assertEqual("approved", backend.approval_status("approval-1"))

        self.assertEqual(4, len(reopened))
        self.assertTrue(reopened[0][0].startswith("msg-user-"))
        self.assertFalse(any(optimistic for _, _, optimistic in reopened))
        self.assertEqual(["tool-read-1", "tool-term-1"], restored_tools)
        self.assertEqual("approved", restored_approval)
        self.assertEqual(4, meta.message_count)

    def test_decision_after_server_expiry_is_refused(self) -> None:
        clock = support.MutableClock()
        backend = DemoBackend(pacing=0, clock=clock)
        backend.seed_session("s1")

        async def run():
            client, session = _wire(backend)
            try:
                await session.send("deploy")
                clock.advance(31 * 60)
                with self.assertRaises(ApprovalDecisionError) as ctx:
                    await session.reject("approval-1")
                return ctx.exception, session.approvals.find("approval-1").status
            finally:
                await session.close()
                await client.aclose()

        error, status = asyncio.run(run())

        self.assertEqual(410, error.status_code)
        self.assertEqual("APPROVAL_EXPIRED", error.code)
        self.assertEqual("pending", status)
        self.assertEqual("expired", backend.approval_status("approval-1"))

    def test_sessions_do_not_share_state(self) -> None:
        backend = DemoBackend(pacing=0)

        async def run():
            client = ChatApiClient("http://demo.local/api", transport=backend.transport())
            first = ChatSession("s1", client)
            second = ChatSession("s2", client)
            try:
                await first.send("one")
                return len(first.store), len(second.store), second.assembler.current_agent
            finally:
                await first.close()
                await second.close()
                await client.aclose()

        first_len, second_len, second_agent = asyncio.run(run())

        self.assertEqual(4, first_len)
        self.assertEqual(0, second_len)
        self.assertIsNone(second_agent)


if __name__ == "__main__":
    unittest.main()
