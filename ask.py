"""
ask.py - 命令行单次查询

    python ask.py "What is the capital of France?"
    python ask.py --model gemini --show-browser "Explain Raft in one paragraph"

答案按增量实时写到 stdout，结束后打印引用来源
"""

import sys
import argparse
import logging

from adapters import get_adapter
from browser_core import BrowserConstants, BrowserError, ConfigurationError, get_browser
from config_engine import ConfigConstants
from engine import query_engine
from protocol import format_sources


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Ask a web chat backend one question and stream the answer."
    )
    parser.add_argument("query", nargs="+", help="Question to ask")
    parser.add_argument(
        "-m", "--model",
        default=ConfigConstants.DEFAULT_MODEL,
        help=f"Model / backend name (default: {ConfigConstants.DEFAULT_MODEL})",
    )
    parser.add_argument(
        "--show-browser",
        action="store_true",
        help="Run the browser with a visible window",
    )
    parser.add_argument(
        "--no-sources",
        action="store_true",
        help="Do not print the sources trailer",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log engine progress to stderr",
    )
    return parser


def run(args: argparse.Namespace) -> int:
    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format='[%(asctime)s] %(levelname)s [%(name)s] %(message)s',
        datefmt='%H:%M:%S',
        stream=sys.stderr,
    )

    if args.show_browser:
        BrowserConstants.override('BROWSER_HEADLESS', False)

    try:
        adapter = get_adapter(args.model)
    except ConfigurationError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    def on_delta(text: str):
        sys.stdout.write(text)
        sys.stdout.flush()

    query = " ".join(args.query)
    try:
        result = query_engine.submit(adapter, query, on_delta=on_delta).result()
    except BrowserError as e:
        print(f"\nerror: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        logging.getLogger('ask').debug("查询异常", exc_info=True)
        print(f"\nerror: {type(e).__name__}: {e}", file=sys.stderr)
        return 1
    finally:
        get_browser().close()

    if not args.no_sources:
        sys.stdout.write(format_sources(result.citations))
    sys.stdout.write("\n")

    if not result.converged:
        print(f"(answer did not settle within {adapter.deadline:.0f}s; it may be incomplete)", file=sys.stderr)
    return 0


def main() -> None:
    sys.exit(run(build_parser().parse_args()))


if __name__ == "__main__":
    main()
