"""Entry point for the development report collector."""

import logging
import os
import sys

from trackagent.collector import ReportStore, create_collector_app, run_collector


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
        stream=sys.stderr,
    )

    host = os.environ.get("COLLECTOR_HOST", "127.0.0.1")
    port = int(os.environ.get("COLLECTOR_PORT", 8080))
    max_reports = int(os.environ.get("COLLECTOR_MAX_REPORTS", 100))

    app = create_collector_app(ReportStore(max_size=max_reports))
    logging.getLogger(__name__).info("Collector listening on %s:%d", host, port)
    run_collector(app, host, port)


if __name__ == "__main__":
    main()
