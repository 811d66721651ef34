import asyncio
import contextlib
import signal
import sys

from dotenv import load_dotenv
from loguru import logger

from agent_chat_client.app_config import load_json_config, parse_app_config, resolve_runtime_env
from agent_chat_client.bootstrap import bootstrap_runtime
from agent_chat_client.errors import ApiError


async def _run_turn(runtime, user_input: str) -> None:
    loop = asyncio.get_running_loop()
    # Ctrl-C during a reply cancels the turn rather than the program.
    installed = False
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, runtime.console.cancel_turn)
        installed = True
    try:
        await runtime.console.run(user_input)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env()

    try:
        runtime = bootstrap_runtime(app, env)
    except ValueError as ex:
        logger.error(str(ex))
        sys.exit(1)

    try:
        await runtime.session.open()
    except ApiError as ex:
        logger.error(f"Could not load history for session {runtime.session.session_id}: {ex}")

    print("agent-chat-client (type 'exit' to quit, '/help' for commands)")
    print(f"Session: {runtime.session.session_id}" + (" [demo backend]" if runtime.demo_backend else ""))
    if len(runtime.session.store):
        print(f"History: {len(runtime.session.store)} message(s), /history to show")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    try:
        while True:
            try:
                user_input = await asyncio.to_thread(input, "you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()

            if trimmed in ("exit", "quit"):
                break

            if not trimmed:
                continue

            try:
                await _run_turn(runtime, trimmed)
                print()
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")
    finally:
        await runtime.aclose()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
