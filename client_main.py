"""Demo client: installs the agent against a local collector and produces a few failures."""

import argparse
import http.client
import logging
import sys
import threading
import time

import trackagent

logger = logging.getLogger(__name__)


def failing_job(n: int):
    raise RuntimeError(f"job {n} failed")


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
        stream=sys.stderr,
    )

    parser = argparse.ArgumentParser(description="trackagent demo client")
    parser.add_argument("--collector", default="http://127.0.0.1:8080", help="Collector base URL")
    parser.add_argument("--token", default="demo-token", help="Customer token")
    parser.add_argument("--count", type=int, default=3, help="Number of failing jobs")
    parser.add_argument("--app", default="demo-client", help="Application name")
    args = parser.parse_args()

    installed = trackagent.install(
        token=args.token,
        application=args.app,
        error_url=f"{args.collector}/capture",
        error_no_ssl_url=f"{args.collector}/capture",
        usage_url=f"{args.collector}/usage.gif",
        fault_url=f"{args.collector}/fault.gif",
    )
    if not installed:
        logger.error("Agent did not install")
        sys.exit(1)

    trackagent.add_metadata("demo", True)
    trackagent.record_navigation("cli", "start", "jobs")
    logger.info("Starting %d jobs", args.count)

    for n in range(args.count):
        thread = threading.Thread(target=failing_job, args=(n,))
        thread.start()
        thread.join()

    host = args.collector.split("://", 1)[-1]
    conn = http.client.HTTPConnection(host, timeout=5)
    try:
        conn.request("GET", "/missing")
        conn.getresponse().read()
    except OSError as exc:
        logger.warning("Collector unreachable: %s", exc)
    finally:
        conn.close()

    trackagent.track("finished demo run")
    time.sleep(1.0)
    logger.info("Done")


if __name__ == "__main__":
    main()
