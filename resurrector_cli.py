import argparse
import sys
import time
from pathlib import Path
from typing import List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"
TERMINAL_STATUSES = {"COMPLETED", "FAILED"}


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def _print_job(data: dict) -> None:
    job = data.get("job") or {}
    print(f"{job.get('id')}  {job.get('name')}  [{job.get('status')}]")
    if job.get("quality_score") is not None:
        print(f"Quality score: {job['quality_score']:g}/100")
    if job.get("github_url"):
        print(f"Repository: {job['github_url']}")
    if job.get("error"):
        print(f"Error: {job['error']}")
    for step in data.get("steps") or []:
        line = f"- {step.get('step'):<9} {step.get('status'):<8} {step.get('duration_ms', 0)}ms"
        if step.get("error"):
            line += f"  {step['error']}"
        print(line)


def _poll_job(client: httpx.Client, base: str, job_id: str, timeout_s: int = 900) -> int:
    start = time.time()
    last_status = None
    while time.time() - start < timeout_s:
        resp = client.get(_join_url(base, f"/api/jobs/{job_id}"), timeout=10)
        resp.raise_for_status()
        data = resp.json()
        status = (data.get("job") or {}).get("status")
        if status != last_status:
            print(f"Status: {status}")
            last_status = status
        if status in TERMINAL_STATUSES and not data.get("running"):
            _print_job(data)
            return 0 if status == "COMPLETED" else 1
        time.sleep(2)
    print("Timed out waiting for the job to finish.")
    return 1


def run_jobs_create(args: argparse.Namespace) -> int:
    sources = []
    for raw_path in args.files:
        path = Path(raw_path)
        sources.append(
            {
                "name": path.stem.upper(),
                "kind": args.kind,
                "module": args.module or "CUSTOM",
                "content": path.read_text(encoding="utf-8", errors="replace"),
            }
        )
    payload = {"name": args.name, "description": args.description or "", "module": args.module, "sources": sources}
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, "/api/jobs"), json=payload, timeout=30)
        if resp.status_code >= 400:
            print(f"Failed to create job: HTTP {resp.status_code} {resp.text}")
            return 1
        job = resp.json().get("job") or {}
        print(job.get("id"))
    return 0


def run_jobs_start(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.post(_join_url(args.base_url, f"/api/jobs/{args.job_id}/start"), timeout=10)
        if resp.status_code >= 400:
            detail = resp.json().get("detail") if resp.headers.get("content-type", "").startswith("application/json") else resp.text
            print(f"Failed to start job: HTTP {resp.status_code} {detail}")
            return 1
        print(resp.json().get("message") or "Started")
        if args.wait:
            return _poll_job(client, args.base_url, args.job_id, timeout_s=args.timeout)
    return 0


def run_jobs_show(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, f"/api/jobs/{args.job_id}"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch job: HTTP {resp.status_code}")
            return 1
        _print_job(resp.json())
    return 0


def run_jobs_list(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, "/api/jobs"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list jobs: HTTP {resp.status_code}")
            return 1
        for job in resp.json().get("jobs") or []:
            print(f"{job.get('id')}  {job.get('status'):<10} {job.get('name')}")
    return 0


def run_tools_health(args: argparse.Namespace) -> int:
    with httpx.Client() as client:
        resp = client.get(_join_url(args.base_url, "/api/tools/health"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch tool health: HTTP {resp.status_code}")
            return 1
        for name, health in (resp.json().get("servers") or {}).items():
            marker = "up" if health.get("healthy") else "down"
            suffix = f"  {health['last_error']}" if health.get("last_error") else ""
            print(f"{name:<20} {marker:<5} {health.get('status')}{suffix}")
    return 0


def run_serve(args: argparse.Namespace) -> int:
    import uvicorn

    uvicorn.run("resurrector.main:app", host=args.host, port=args.port)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Resurrector CLI")
    parser.add_argument("--base-url", default=DEFAULT_API_BASE, help="API base URL")
    subparsers = parser.add_subparsers(dest="command")

    jobs = subparsers.add_parser("jobs", help="Resurrection jobs")
    jobs_sub = jobs.add_subparsers(dest="jobs_cmd")

    create = jobs_sub.add_parser("create", help="Create a job from ABAP source files")
    create.add_argument("--name", required=True, help="Job display name")
    create.add_argument("--description", help="Free-text description")
    create.add_argument("--module", help="SAP module tag (SD, MM, FI, ...)")
    create.add_argument("--kind", default="PROGRAM", help="Source unit kind")
    create.add_argument("files", nargs="+", help="Source files to ingest")

    start = jobs_sub.add_parser("start", help="Start the pipeline for a job")
    start.add_argument("job_id")
    start.add_argument("--wait", action="store_true", help="Wait for the job to finish")
    start.add_argument("--timeout", type=int, default=900, help="Max wait seconds")

    show = jobs_sub.add_parser("show", help="Show a job and its steps")
    show.add_argument("job_id")

    jobs_sub.add_parser("list", help="List recent jobs")

    tools = subparsers.add_parser("tools", help="Tool servers")
    tools_sub = tools.add_subparsers(dest="tools_cmd")
    tools_sub.add_parser("health", help="Show tool server health")

    serve = subparsers.add_parser("serve", help="Run the API server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "jobs" and args.jobs_cmd == "create":
        return run_jobs_create(args)
    if args.command == "jobs" and args.jobs_cmd == "start":
        return run_jobs_start(args)
    if args.command == "jobs" and args.jobs_cmd == "show":
        return run_jobs_show(args)
    if args.command == "jobs" and args.jobs_cmd == "list":
        return run_jobs_list(args)
    if args.command == "tools" and args.tools_cmd == "health":
        return run_tools_health(args)
    if args.command == "serve":
        return run_serve(args)
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
