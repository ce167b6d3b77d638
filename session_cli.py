import argparse
import asyncio
import json
import os
from typing import Optional

import requests
import websockets

API_BASE = os.getenv("API_BASE", "http://127.0.0.1:4000")


def _do_json(method: str, url: str, body: Optional[dict] = None) -> requests.Response:
    headers = {
        "Content-Type": "application/json",
        "Connection": "close",
    }
    data = json.dumps(body) if body is not None else None
    resp = requests.request(method, url, data=data, headers=headers, timeout=15)
    print(f"{method} {url} -> {resp.status_code} {resp.reason}")
    print(resp.text)
    return resp


def start_session(ev_id: str, power_required: float, hours: Optional[float]) -> requests.Response:
    payload = {"evId": ev_id, "powerRequired": power_required}
    if hours is not None:
        payload["hours"] = hours
    return _do_json("POST", f"{API_BASE}/api/sessions/start", payload)


def pause_session(ev_id: str, session_id: str) -> requests.Response:
    return _do_json("POST", f"{API_BASE}/api/sessions/pause", {"evId": ev_id, "sessionId": session_id})


def resume_session(ev_id: str, session_id: str, token: str) -> requests.Response:
    payload = {"evId": ev_id, "sessionId": session_id, "resumeToken": token}
    return _do_json("POST", f"{API_BASE}/api/sessions/resume", payload)


def stop_session(ev_id: str, session_id: str) -> requests.Response:
    return _do_json("POST", f"{API_BASE}/api/sessions/stop", {"evId": ev_id, "sessionId": session_id})


def queue_status() -> requests.Response:
    return _do_json("GET", f"{API_BASE}/api/queue/status")


def retry_dead(session_id: Optional[str]) -> requests.Response:
    body = {"sessionId": session_id} if session_id else {}
    return _do_json("POST", f"{API_BASE}/api/queue/retry", body)


async def watch_events(limit: Optional[int] = None) -> None:
    url = API_BASE.replace("http://", "ws://").replace("https://", "wss://") + "/ws/events"
    print(f"Watching {url}")
    seen = 0
    async with websockets.connect(url) as ws:
        async for raw in ws:
            message = json.loads(raw)
            print(json.dumps(message, indent=2))
            seen += 1
            if limit is not None and seen >= limit:
                return


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Drive charging sessions via the HTTP API")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_start = sub.add_parser("start", help="start a session")
    p_start.add_argument("evId")
    p_start.add_argument("powerRequired", type=float)
    p_start.add_argument("--hours", type=float, default=None)

    p_pause = sub.add_parser("pause", help="pause a session")
    p_pause.add_argument("evId")
    p_pause.add_argument("sessionId")

    p_resume = sub.add_parser("resume", help="resume a paused session")
    p_resume.add_argument("evId")
    p_resume.add_argument("sessionId")
    p_resume.add_argument("resumeToken")

    p_stop = sub.add_parser("stop", help="stop a session")
    p_stop.add_argument("evId")
    p_stop.add_argument("sessionId")

    sub.add_parser("queue", help="show ledger queue status")

    p_retry = sub.add_parser("retry", help="re-queue dead ledger events")
    p_retry.add_argument("sessionId", nargs="?", default=None)

    p_watch = sub.add_parser("watch", help="stream live session events")
    p_watch.add_argument("--limit", type=int, default=None)

    return parser.parse_args()


def main() -> None:
    args = parse_args()
    if args.cmd == "start":
        start_session(args.evId, args.powerRequired, args.hours)
    elif args.cmd == "pause":
        pause_session(args.evId, args.sessionId)
    elif args.cmd == "resume":
        resume_session(args.evId, args.sessionId, args.resumeToken)
    elif args.cmd == "stop":
        stop_session(args.evId, args.sessionId)
    elif args.cmd == "queue":
        queue_status()
    elif args.cmd == "retry":
        retry_dead(args.sessionId)
    elif args.cmd == "watch":
        asyncio.run(watch_events(args.limit))


if __name__ == "__main__":
    main()
