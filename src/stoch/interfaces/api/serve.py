# stoch-serve --port 8000 --seed 7

import argparse
import logging

import uvicorn

from stoch.inference.stoch import Stoch
from stoch.inference.stoch_common import OVERFLOW_POLICIES, SUPPORTED_ORDERS

from .api_server import create_api_server


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="stoch HTTP server")
    parser.add_argument(
        "--host",
        metavar="HOST",
        type=str,
        default="127.0.0.1",
        help="Interface to bind",
    )
    parser.add_argument(
        "--port",
        metavar="PORT",
        type=int,
        default=8000,
        help="Port to run the server on",
    )
    parser.add_argument(
        "--order",
        type=int,
        choices=SUPPORTED_ORDERS,
        default=1,
        help="Markov order: 1 for byte transitions, 0 for a plain histogram",
    )
    parser.add_argument(
        "--overflow",
        choices=OVERFLOW_POLICIES,
        default="saturate",
        help="What to do when a context counter reaches its limit",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=None,
        help="Seed the default randomness source for reproducible output",
    )
    parser.add_argument(
        "--train",
        metavar="FILE",
        action="append",
        default=[],
        help="Train on the given file before serving (repeatable)",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.seed is not None and args.seed < 0:
        parser.error("--seed must be >= 0")

    if args.verbose and not logging.getLogger().handlers:
        logging.basicConfig(level=logging.DEBUG)

    model = Stoch.configure({"order": args.order, "overflow": args.overflow}, seed=args.seed)
    for path in args.train:
        with open(path, "rb") as fh:
            model.train(fh.read())
    uvicorn.run(create_api_server(model), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
