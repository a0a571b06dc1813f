"""CLI entry point for the TaxFlow API server."""

import argparse
import os


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="taxflow-server",
        description="TaxFlow API server: filing workflow and webhook delivery",
    )
    parser.add_argument("--host", default=None, help="Bind host (default: TAXFLOW_HOST)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (default: TAXFLOW_PORT)")
    parser.add_argument(
        "--local",
        action="store_true",
        help="Local dev mode: SQLite database and in-process job queue, no Redis required",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Concurrent delivery workers (default: TAXFLOW_WORKER_CONCURRENCY)",
    )
    args = parser.parse_args(argv)

    if args.local:
        os.environ["TAXFLOW_LOCAL_MODE"] = "1"
    if args.workers is not None:
        os.environ["TAXFLOW_WORKER_CONCURRENCY"] = str(args.workers)

    import uvicorn

    # Settings are read only after the flags above have been exported.
    from taxflow.config import settings

    uvicorn.run(
        "taxflow.main:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
