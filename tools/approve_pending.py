"""Operator console for the approval queue.

Usage:
    IOTCA_ADMIN_TOKEN=... python tools/approve_pending.py [--base URL] [--approve-all | --deny-all]

Without a flag every pending request is shown and asked about interactively.
"""
import argparse, json, os, sys

from iotca.client import CAClient, CAClientError


def main():
    ap = argparse.ArgumentParser()
    ap.add_argument("--base", default="http://127.0.0.1:3000")
    ap.add_argument("--token", default=os.getenv("IOTCA_ADMIN_TOKEN", ""))
    group = ap.add_mutually_exclusive_group()
    group.add_argument("--approve-all", action="store_true")
    group.add_argument("--deny-all", action="store_true")
    args = ap.parse_args()

    if not args.token:
        print("admin token required (--token or IOTCA_ADMIN_TOKEN)", file=sys.stderr)
        return 2

    client = CAClient(args.base, "operator", "operator")
    try:
        pending = client.pending_approvals(args.token)
    except CAClientError as e:
        print("Could not list approvals:", e, file=sys.stderr)
        return 1

    if not pending:
        print("No pending approvals.")
        return 0

    for req in pending:
        print(json.dumps(req, indent=2))
        if args.approve_all:
            approved = True
        elif args.deny_all:
            approved = False
        else:
            approved = input("Approve? (y/n): ").strip().lower() in ("y", "yes")
        try:
            client.resolve_approval(args.token, req["requestId"], approved)
        except CAClientError as e:
            # the requester may have timed out meanwhile
            print("Could not resolve", req["requestId"], ":", e, file=sys.stderr)
            continue
        print("approved" if approved else "denied", req["serviceName"])
    return 0


if __name__ == "__main__":
    sys.exit(main())
