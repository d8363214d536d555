"""
Main Execution Module

Command-line entry point:

    python main.py serve                       # start the HTTP + SSE API
    python main.py run --prompt "open settings"  # run one instruction locally

Environment variables are loaded from a ``.env`` file when present.
"""
import argparse
import asyncio
import json
import sys

from dotenv import load_dotenv

from config import get_settings
from errors import AutomationError
from logging_utils import close_log_capture, log, safe_print, setup_log_capture


def _start_log_capture(settings) -> None:
    log_file_path = setup_log_capture(str(settings.log_dir))
    if log_file_path:
        log("LOG", f"Console output is being saved to: {log_file_path}")
    else:
        log("WARN", "Failed to initialize file logging. Console output will not be saved.")


def serve(host=None, port=None) -> None:
    import uvicorn

    from api_server import app

    settings = get_settings()
    log("BOT", f"Starting API server on {host or settings.host}:{port or settings.port}")
    uvicorn.run(app, host=host or settings.host, port=port or settings.port)


async def run_once(prompt: str, session_id=None) -> int:
    """Run one instruction against the connected device, printing events as they arrive."""
    from automation_manager import automation_manager

    session = automation_manager.sessions.get_or_create(session_id)
    device = await asyncio.get_running_loop().run_in_executor(None, automation_manager.device.setup)
    log("OK", f"Using device {device.id}")

    run = await automation_manager.submit_instruction(session.id, prompt)
    async for event in automation_manager.run_event_stream(run.id):
        safe_print(f"--- [EVENT] {event['type']}: {json.dumps(event, ensure_ascii=False)[:500]}")

    finished = automation_manager.get_run(run.id)
    outcome = finished.outcome or {}
    log("TASK", f"Finished with status {finished.status}")
    if outcome.get("result"):
        safe_print(outcome["result"])
    return 0 if finished.status == "completed" else 1


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Natural-language control of an Android device")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", help="Bind address (default: HOST or 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="Port (default: PORT or 3000)")

    run_parser = subparsers.add_parser("run", help="Run one instruction and exit")
    run_parser.add_argument("--prompt", required=True, help="Instruction to execute")
    run_parser.add_argument("--session", help="Session id to reuse")

    args = parser.parse_args(argv)
    load_dotenv()

    try:
        settings = get_settings()
    except AutomationError as exc:
        log("ERROR", str(exc))
        return 2

    _start_log_capture(settings)
    try:
        if args.command == "serve":
            serve(args.host, args.port)
            return 0
        return asyncio.run(run_once(args.prompt, args.session))
    except AutomationError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        log("INFO", "Interrupted by user")
        return 130
    finally:
        close_log_capture()


if __name__ == "__main__":
    sys.exit(main())
