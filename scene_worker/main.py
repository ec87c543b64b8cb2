"""
Scene Worker Main Entry Point

job 실행(SSE 프레임을 stdout 으로 출력) 및 job 캐시 관리 CLI
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

from config.settings import get_gemini_api_key
from db.session import init_db
from scene_worker.cache.job_cache import SqlJobCache
from scene_worker.cache.phase_cache import SqlPhaseCache
from scene_worker.llm.client import GeminiClient, verify_api_key
from scene_worker.pipeline.orchestrator import CancelToken, JobOrchestrator, stream_job
from scene_worker.pipeline.resume import build_resume_request, can_resume
from scene_worker.pipeline.types import JobRequest

logger = logging.getLogger(__name__)


def _build_orchestrator(persist_call_logs: bool) -> JobOrchestrator:
    return JobOrchestrator(
        GeminiClient(),
        SqlJobCache(),
        SqlPhaseCache(),
        persist_call_logs=persist_call_logs,
    )


async def _stream(request: JobRequest, persist_call_logs: bool) -> None:
    """job 을 실행하며 프레임을 stdout 으로 흘린다. Ctrl+C 는 취소 토큰으로 전달."""
    token = CancelToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel)
    except NotImplementedError:
        # Windows 이벤트 루프는 add_signal_handler 미지원
        logger.debug("SIGINT 핸들러 등록 불가, 기본 KeyboardInterrupt 사용")

    orchestrator = _build_orchestrator(persist_call_logs)
    async for frame in stream_job(orchestrator, request, token=token):
        sys.stdout.write(frame)
        sys.stdout.flush()


def _load_request(args: argparse.Namespace) -> JobRequest:
    data: dict = {}
    if args.config:
        data = json.loads(Path(args.config).read_text(encoding="utf-8"))
    if args.url:
        data["videoUrl"] = args.url
    if args.script:
        data["scriptText"] = Path(args.script).read_text(encoding="utf-8")
        data.setdefault("workflow", "script-to-scenes")
    if args.scenes:
        data["sceneCount"] = args.scenes
    if args.batch_size:
        data["batchSize"] = args.batch_size
    return JobRequest.from_dict(data)


# ---------------------------------------------------------------------------
# 서브커맨드
# ---------------------------------------------------------------------------

def cmd_run(args: argparse.Namespace) -> int:
    request = _load_request(args)
    asyncio.run(_stream(request, args.save_llm_logs))
    return 0


def cmd_resume(args: argparse.Namespace) -> int:
    cache = SqlJobCache()
    job = cache.get(args.job_id)
    if job is None:
        print(f"Job not found or expired: {args.job_id}", file=sys.stderr)
        return 1
    if not can_resume(job, cache.clock()):
        print(f"Job {args.job_id} is not resumable (status={job.status.value})", file=sys.stderr)
        return 1
    request = build_resume_request(job, reextract=args.reextract)
    asyncio.run(_stream(request, args.save_llm_logs))
    return 0


def cmd_list(args: argparse.Namespace) -> int:
    summaries = SqlJobCache().list()
    if not summaries:
        print("No cached jobs.")
        return 0

    print("\n" + "=" * 80)
    print("Cached Jobs")
    print("=" * 80)
    for s in summaries:
        print(f"\n[{s.job_id}] {s.status.value}")
        print(f"  Workflow: {s.workflow} ({s.mode})")
        print(f"  Scenes: {s.scene_count}  Characters: {s.character_count}")
        print(f"  Created: {s.created_at:%Y-%m-%d %H:%M}  Expires: {s.expires_at:%Y-%m-%d %H:%M}")
        if s.error_summary:
            print(f"  Error: {s.error_summary}")
    print("\n" + "=" * 80)
    print(f"Total: {len(summaries)} jobs")
    print("=" * 80 + "\n")
    return 0


def cmd_show(args: argparse.Namespace) -> int:
    job = SqlJobCache().get(args.job_id)
    if job is None:
        print(f"Job not found or expired: {args.job_id}", file=sys.stderr)
        return 1
    print(json.dumps(job.to_dict(), ensure_ascii=False, indent=2))
    return 0


def cmd_delete(args: argparse.Namespace) -> int:
    deleted = SqlJobCache().delete(args.job_id)
    SqlPhaseCache().delete_job(args.job_id)
    print("Deleted." if deleted else f"Job not found: {args.job_id}")
    return 0 if deleted else 1


def cmd_clear(args: argparse.Namespace) -> int:
    print(f"Deleted {SqlJobCache().clear()} jobs.")
    return 0


def cmd_purge(args: argparse.Namespace) -> int:
    print(f"Purged {SqlJobCache().purge_expired()} expired jobs.")
    return 0


def cmd_verify_key(args: argparse.Namespace) -> int:
    api_key = args.key or get_gemini_api_key()
    if not api_key:
        print("GEMINI_API_KEY is not set.", file=sys.stderr)
        return 1
    valid = verify_api_key(api_key)
    print("API key is valid." if valid else "API key is invalid.")
    return 0 if valid else 1


def main() -> int:
    """메인 진입점"""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        stream=sys.stderr,
    )
    parser = argparse.ArgumentParser(
        description="Scene Worker: multi-phase scene generation",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m scene_worker.main run --url https://youtu.be/XXXXXXXXXXX --scenes 25 --batch-size 5
  python -m scene_worker.main run --config job.json
  python -m scene_worker.main resume job_0000000000000_abcd1234
  python -m scene_worker.main list
        """,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    p_run = sub.add_parser("run", help="Run a job and stream SSE frames to stdout")
    p_run.add_argument("--config", help="Job options JSON file")
    p_run.add_argument("--url", help="Source YouTube URL")
    p_run.add_argument("--script", help="Script text file (script-to-scenes)")
    p_run.add_argument("--scenes", type=int, help="Target scene count")
    p_run.add_argument("--batch-size", type=int, help="Scenes per batch")
    p_run.add_argument("--save-llm-logs", action="store_true", help="Persist provider call logs to DB")
    p_run.set_defaults(func=cmd_run)

    p_resume = sub.add_parser("resume", help="Resume a partial/failed job")
    p_resume.add_argument("job_id")
    p_resume.add_argument("--reextract", action="store_true", help="Re-run color/character extraction")
    p_resume.add_argument("--save-llm-logs", action="store_true")
    p_resume.set_defaults(func=cmd_resume)

    sub.add_parser("list", help="List cached jobs").set_defaults(func=cmd_list)

    p_show = sub.add_parser("show", help="Print a cached job as JSON")
    p_show.add_argument("job_id")
    p_show.set_defaults(func=cmd_show)

    p_delete = sub.add_parser("delete", help="Delete a cached job")
    p_delete.add_argument("job_id")
    p_delete.set_defaults(func=cmd_delete)

    sub.add_parser("clear", help="Delete all cached jobs").set_defaults(func=cmd_clear)
    sub.add_parser("purge", help="Remove expired jobs").set_defaults(func=cmd_purge)

    p_key = sub.add_parser("verify-key", help="Check the Gemini API key")
    p_key.add_argument("--key", help="API key (default: GEMINI_API_KEY)")
    p_key.set_defaults(func=cmd_verify_key)

    args = parser.parse_args()
    init_db()
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
