import argparse
import json
import urllib.request

from .personas import PERSONAS

URL = "http://127.0.0.1:8123/ingest"


def post_batch(url, batch):
    data = json.dumps(batch).encode("utf-8")
    req = urllib.request.Request(url, data=data, headers={"Content-Type": "application/json"})
    with urllib.request.urlopen(req, timeout=5) as r:
        return json.loads(r.read() or b"{}")


def main(argv=None):
    ap = argparse.ArgumentParser(description="Post synthetic form sessions to a collector.")
    ap.add_argument("--url", default=URL)
    ap.add_argument("--project", default="demo")
    ap.add_argument("--sessions", type=int, default=6, help="sessions per persona")
    args = ap.parse_args(argv)

    accepted = 0
    for name, make in PERSONAS.items():
        for _ in range(args.sessions):
            accepted += int(post_batch(args.url, make(project_id=args.project)).get("accepted", 0))
    print(f"Seeded {accepted} events across {len(PERSONAS)} personas x {args.sessions} sessions.")


if __name__ == "__main__":
    main()
