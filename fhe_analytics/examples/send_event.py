"""Example client that reports a short visit to the analytics API."""
from __future__ import annotations

import argparse
import os

import requests

from fhe_analytics.client import HttpTransport, Tracker


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send sample analytics events")
    parser.add_argument(
        "--api-url",
        default=os.environ.get("FHE_ANALYTICS_API_URL", "http://127.0.0.1:8000"),
        help="Analytics API base URL (default: %(default)s or FHE_ANALYTICS_API_URL)",
    )
    parser.add_argument(
        "--token",
        default=os.environ.get("FHE_ANALYTICS_ORIGIN_TOKEN"),
        help="Origin token; the demo origin is used when omitted (FHE_ANALYTICS_ORIGIN_TOKEN)",
    )
    parser.add_argument("--page", default="/pricing", help="Page path to report")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    session = requests.Session()
    token = args.token
    origin_id = None
    if not token:
        demo = session.get(f"{args.api_url}/api/demo/origin", timeout=10)
        demo.raise_for_status()
        token = demo.json()["token"]
        origin_id = demo.json()["origin"]["id"]

    tracker = Tracker(token, HttpTransport(f"{args.api_url}/api/collect", session=session), page=args.page)
    tracker.start()
    tracker.track("signup_click", {"element": "BUTTON"})
    tracker.conversion(49)
    tracker.on_unload()
    print("Events sent for session", tracker.session_id)

    if origin_id is not None:
        metrics = session.get(f"{args.api_url}/api/metrics/{origin_id}", timeout=10)
        metrics.raise_for_status()
        print("Metrics:", metrics.json()["metrics"])


if __name__ == "__main__":
    main()
