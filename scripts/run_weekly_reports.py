import argparse
import logging

import config
import storage
from reports import send_weekly_reports


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the weekly report email job once")
    parser.add_argument("--force", action="store_true", help="send to every enabled user, ignoring send day/hour")
    args = parser.parse_args()

    logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    storage.ensure_db()
    sent = send_weekly_reports(force=args.force)
    print(f"sent {sent} report(s)")


if __name__ == "__main__":
    main()
