"""
Main entry point for the RoundZ interview runner.

Operator controls at the prompt:
    Enter  advance to the next phase
    m      toggle candidate microphone mute
    q      end the interview
"""

import argparse
import asyncio
import logging
import os
import sys
import uuid
from pathlib import Path

from roundz_interview.config import get_settings
from roundz_interview.errors import InitializationError, NetworkError
from roundz_interview.interview.schemas import Phase, SessionStatus
from roundz_interview.interview.session import ConversationSession, SessionConfig, build_session

logger = logging.getLogger(__name__)


def setup_logging() -> None:
    """Configure application logging."""
    settings = get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="roundz-interview", description="Run a phased voice interview")
    p.add_argument(
        "--candidate-name",
        default=os.getenv("ROUNDZ_CANDIDATE_NAME"),
        help="Candidate name sent with the transcript (default: ROUNDZ_CANDIDATE_NAME)",
    )
    p.add_argument(
        "--interview-id",
        default=os.getenv("ROUNDZ_INTERVIEW_ID"),
        help="Interview identifier (default: ROUNDZ_INTERVIEW_ID or a random id)",
    )
    p.add_argument(
        "--stt-mode",
        default=os.getenv("STT_MODE", "local"),
        choices=["local", "streaming"],
        help="Speech input implementation (default: STT_MODE or 'local')",
    )
    p.add_argument(
        "--settle-delay-ms",
        type=int,
        default=int(os.getenv("SETTLE_DELAY_MS", "1000") or "1000"),
        help="Pause after a phase greeting before listening resumes (default: SETTLE_DELAY_MS or 1000)",
    )
    p.add_argument(
        "--artifacts-dir",
        default=os.getenv("ROUNDZ_ARTIFACTS_DIR", "data/interviews"),
        help="Where to write transcript exports (default: ROUNDZ_ARTIFACTS_DIR or data/interviews)",
    )
    p.add_argument("--no-greeting", action="store_true", help="Do not speak the opening line on connect")
    p.add_argument("--no-scoring", action="store_true", help="Skip submitting the transcript for scoring")
    return p


def _status_line(session: ConversationSession) -> str:
    state = session.state
    parts = [f"phase={state.current_phase.value}", f"status={state.status.value}"]
    if state.muted:
        parts.append("muted")
    if state.error is not None:
        parts.append(f"error={state.error.kind.value}:{state.error.operation}")
    return "[Voice] " + " ".join(parts)


async def _operator_loop(session: ConversationSession) -> None:
    while session.state.status not in (SessionStatus.ENDED, SessionStatus.ERROR):
        print(_status_line(session), flush=True)
        try:
            line = await asyncio.to_thread(input, "[Enter]=next phase  m=mute  q=quit > ")
        except EOFError:
            return
        command = line.strip().lower()

        if command == "q":
            return
        if command == "m":
            session.set_muted(not session.state.muted)
            continue
        if command:
            print(f"[Voice] Unknown command: {command!r}", flush=True)
            continue

        phase = await session.next_phase()
        if phase is Phase.DONE or session.phases.is_terminal:
            return


async def _finish(session: ConversationSession, artifacts_dir: str, *, score: bool) -> None:
    out_dir = Path(artifacts_dir) / session.interview_id
    out_dir.mkdir(parents=True, exist_ok=True)
    session.transcript.export_text(out_dir / "transcript.txt")
    session.transcript.export_json(out_dir / "transcript.json")
    print(f"[Voice] Transcript written to {out_dir}", flush=True)

    if not score:
        return
    try:
        result = await session.submit_for_scoring()
    except NetworkError as e:
        print(f"[Voice] Scoring failed, transcript kept locally: {e}", flush=True)
        return
    print(
        f"[Voice] Score overall={result.overall_score} fit={result.fit_score} "
        f"tech={result.tech_score} brain={result.brain_score}",
        flush=True,
    )
    if result.feedback:
        print(f"[Voice] {result.feedback}", flush=True)


async def run_interview(argv: list[str] | None = None) -> int:
    """
    Run an interactive interview session.

    Returns:
        Process exit code.
    """
    args = build_parser().parse_args(argv)
    settings = get_settings()

    config = SessionConfig(
        interview_id=args.interview_id or uuid.uuid4().hex,
        candidate_name=args.candidate_name,
        settle_delay_s=args.settle_delay_ms / 1000.0,
        greet_on_start=not args.no_greeting,
    )
    session = build_session(settings, config=config, stt_mode=args.stt_mode)

    logger.info(f"Starting interview {config.interview_id}...")
    try:
        await session.start_call()
    except InitializationError as e:
        print(f"[Voice] Could not start the interview: {e}", flush=True)
        return 1

    try:
        await _operator_loop(session)
        if session.phases.is_terminal:
            await _finish(session, args.artifacts_dir, score=not args.no_scoring)
    finally:
        await session.stop_call()

    return 1 if session.state.error is not None and session.state.error.fatal else 0


def main() -> None:
    """Main entry point for the application."""
    setup_logging()

    try:
        code = asyncio.run(run_interview(sys.argv[1:]))
    except KeyboardInterrupt:
        print("\nInterview session terminated by user.")
        sys.exit(0)
    except Exception as e:
        logging.error(f"Application error: {e}", exc_info=True)
        sys.exit(1)
    sys.exit(code)


if __name__ == "__main__":
    main()
