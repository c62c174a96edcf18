# cli/run_relay.py
import argparse
import json
import logging
import sys

from dotenv import load_dotenv

from lambdas.relay_logs.app import configure_logging, run_relay
from lambdas.relay_logs.models import RelayError, get_settings

logger = logging.getLogger("log_relay.cli")


def read_event(path: str) -> dict:
    """Reads the trigger event from a file, or from stdin when path is '-'."""
    if path == "-":
        return json.load(sys.stdin)
    with open(path, 'r', encoding='utf-8') as f:
        return json.load(f)


def main(argv=None) -> int:
    """
    Runs one relay for a trigger event. Prints the summary JSON to stdout on
    success; prints nothing to stdout and exits 1 on abort.
    """
    # Load environment variables from a .env file for local testing
    load_dotenv()

    parser = argparse.ArgumentParser(
        description="Relays the log archive named by an object-store event to the log ingestion API."
    )
    parser.add_argument(
        'event',
        metavar='EVENT',
        nargs='?',
        default='-',
        help="Path to the trigger event JSON file ('-' reads stdin)."
    )
    parser.add_argument(
        '--keep-scratch',
        action='store_true',
        help='Keep the scratch workspace after the run for local inspection.'
    )
    args = parser.parse_args(argv)

    settings = get_settings()
    configure_logging(settings.log_level)

    try:
        event = read_event(args.event)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"❌ ERROR: Could not read trigger event from '{args.event}': {e}")
        return 1

    try:
        summary = run_relay(event, settings, keep_scratch=args.keep_scratch)
    except RelayError as e:
        logger.error(f"❌ FATAL: {e}")
        return 1

    print(json.dumps(summary))
    return 0


if __name__ == "__main__":
    sys.exit(main())
