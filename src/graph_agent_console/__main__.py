import asyncio

from dotenv import load_dotenv
from loguru import logger

from graph_agent_console.app_config import load_json_config, parse_app_config, resolve_runtime_env
from graph_agent_console.bootstrap import bootstrap_runtime


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    env = resolve_runtime_env()
    runtime = bootstrap_runtime(app, env)
    console = runtime.console

    print("graph-agent-console (type 'exit' to quit, '/help' for commands)")
    print(f"Backend: {app.backend_url}")
    print(f"Output channel: {app.channel_url}")
    print(f"Sessions: {runtime.storage.path} ({len(runtime.store.list_sessions())} stored)")
    if runtime.pruned_session_ids:
        print(f"Pruned {len(runtime.pruned_session_ids)} stale session(s)")
    active = runtime.store.get_active()
    if active is not None:
        print(f"Active session: {active.title} ({len(active.messages)} messages)")
    if runtime.log_descriptions:
        print(f"Logging: {', '.join(runtime.log_descriptions)}")
    print()

    await runtime.channel.connect()

    try:
        while True:
            try:
                # input() blocks; run it off-loop so channel events keep flowing
                user_input = await asyncio.to_thread(input, console.user_prompt)
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()

            if trimmed in ("exit", "quit"):
                break

            if not trimmed:
                continue

            try:
                await console.run(trimmed)
                print()
            except Exception as ex:
                logger.error(f"Unhandled error: {ex}")
    finally:
        await runtime.channel.teardown()
        runtime.storage.close()


def run() -> None:
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
