import argparse
from datetime import timedelta

from ..config import settings
from ..events import utcnow
from ..store import StoreUnavailable, build_store


def main(argv=None):
    ap = argparse.ArgumentParser(description="Drop events older than the retention window.")
    ap.add_argument("--days", type=int, default=settings.RETENTION_DAYS,
                    help="keep this many trailing days (default: RETENTION_DAYS)")
    args = ap.parse_args(argv)
    if args.days < 1:
        ap.error("--days must be >= 1")

    store = build_store()
    cutoff = utcnow() - timedelta(days=args.days)
    try:
        removed = store.prune(cutoff)
    except StoreUnavailable as e:
        print(f"[prune] store unavailable: {e}")
        return 1
    if not removed:
        print(f"[prune] nothing older than {cutoff:%Y-%m-%d %H:%M}; nothing to remove.")
        return 0
    print(f"[prune] removed {removed} events older than {cutoff:%Y-%m-%d %H:%M}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
