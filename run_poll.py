import argparse
import json
import sys

from dotenv import load_dotenv

from app import build_credential_manager
from errors import ConfigError
from logging_utils import configure_logging
from mail_poller import MailPoller
from settings import load_settings


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run a single poll-filter-forward tick and print the result.")
    parser.add_argument("--max-results", type=int, help="Override MAX_EMAILS_TO_FETCH for this run")
    parser.add_argument("--marker", help="Override SUBJECT_MARKER for this run")
    args = parser.parse_args(argv)

    load_dotenv()
    configure_logging()
    try:
        settings = load_settings()
    except ConfigError as exc:
        print(str(exc), file=sys.stderr)
        return 1

    overrides = {}
    if args.max_results:
        overrides["max_results"] = args.max_results
    if args.marker:
        overrides["subject_marker"] = args.marker

    credentials = build_credential_manager(settings)
    poller = MailPoller.from_settings(settings, credentials, **overrides)
    result = poller.poll_once()
    print(json.dumps(result.to_dict(), indent=2, sort_keys=True))
    return 0 if result.status == "ok" else 2


if __name__ == "__main__":
    raise SystemExit(main())
