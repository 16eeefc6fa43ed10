#!/usr/bin/env python3
# MiastoAlert CLI v1.0.0
# argparse operator console. Moderation commands act as the provisioned owner.

import argparse
import json
import os
import sys
import time

import identity
import lifecycle
import moderation
from errors import MiastoAlertError


def _owner_caller():
    owners = identity.UserStore.list_owners()
    if not owners:
        print("No owner provisioned. Run `bootstrap-owner` first.", file=sys.stderr)
        sys.exit(1)
    return identity.caller_from_user(owners[0])


def _fmt_time(ts):
    return time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(ts))


def cmd_serve(args):
    """Run the HTTP API."""
    import uvicorn

    from api import app

    uvicorn.run(app, host=args.host, port=args.port)


def cmd_sweep(args):
    """Run one expiry sweep now."""
    removed = lifecycle.sweep_expired()
    print(f"Removed {removed} expired report(s).")


def cmd_reports(args):
    """List active reports in a city."""
    window = lifecycle.clamp_window(args.minutes)
    reports = lifecycle.list_reports(args.city, window)
    if not reports:
        print(f"No reports in {args.city} in the last {window} minutes.")
        return
    for r in reports:
        bus = f" | bus {r.bus_number}" if r.bus_number else ""
        print(
            f"  [{r.type:>8}] {r.id} | {r.location}{bus} | "
            f"{r.lat:.5f},{r.lng:.5f} | {_fmt_time(r.created_at)} | +{r.confirmation_count}"
        )


def cmd_users(args):
    """List users, newest first."""
    for u in identity.UserStore.list_users(limit=args.limit):
        flag = " BANNED" if u["banned"] else ""
        print(f"  [{u['role']:>9}] {u['id']} | {u['city']} | rating {u['rating']}{flag}")


def cmd_bootstrap_owner(args):
    """Provision the single owner account."""
    owner = identity.bootstrap_owner(
        email=args.email or os.environ.get("OWNER_EMAIL", ""),
        password=args.password or os.environ.get("OWNER_PASSWORD", ""),
        city=args.city,
    )
    if owner is None:
        print("Owner not created: email and password are required.", file=sys.stderr)
        sys.exit(1)
    print(f"Owner: {owner['id']} | {owner.get('email') or '-'} | {owner['city']}")


def cmd_ban(args):
    user = moderation.set_banned(_owner_caller(), args.user_id, not args.unban)
    print(f"User {user['id']} banned={user['banned']}")


def cmd_role(args):
    user = moderation.set_role(_owner_caller(), args.user_id, args.role)
    print(f"User {user['id']} role={user['role']}")


def cmd_reset_city(args):
    user = moderation.reset_city(_owner_caller(), args.user_id)
    print(f"User {user['id']} city reset to {user['city']}")


def cmd_delete_report(args):
    result = moderation.delete_report(_owner_caller(), args.report_id)
    print(json.dumps(result, indent=2))


def build_parser():
    p = argparse.ArgumentParser(prog="miastoalert", description="MiastoAlert operator console")
    sub = p.add_subparsers(dest="command", required=True)

    s = sub.add_parser("serve", help="Run the HTTP API")
    s.add_argument("--host", default="0.0.0.0")
    s.add_argument("--port", type=int, default=int(os.environ.get("PORT", "5000")))
    s.set_defaults(func=cmd_serve)

    s = sub.add_parser("sweep", help="Delete expired reports once")
    s.set_defaults(func=cmd_sweep)

    s = sub.add_parser("reports", help="List active reports in a city")
    s.add_argument("--city", required=True)
    s.add_argument("--minutes", type=int, default=lifecycle.DEFAULT_WINDOW_MIN)
    s.set_defaults(func=cmd_reports)

    s = sub.add_parser("users", help="List users")
    s.add_argument("--limit", type=int, default=50)
    s.set_defaults(func=cmd_users)

    s = sub.add_parser("bootstrap-owner", help="Provision the owner account")
    s.add_argument("--email")
    s.add_argument("--password")
    s.add_argument("--city", default=identity.OWNER_CITY)
    s.set_defaults(func=cmd_bootstrap_owner)

    s = sub.add_parser("ban", help="Ban (or --unban) a user")
    s.add_argument("user_id")
    s.add_argument("--unban", action="store_true")
    s.set_defaults(func=cmd_ban)

    s = sub.add_parser("role", help="Set a user's role")
    s.add_argument("user_id")
    s.add_argument("role", choices=sorted(moderation.ASSIGNABLE_ROLES))
    s.set_defaults(func=cmd_role)

    s = sub.add_parser("reset-city", help="Force a user to pick a city again")
    s.add_argument("user_id")
    s.set_defaults(func=cmd_reset_city)

    s = sub.add_parser("delete-report", help="Delete a report (author rating -1)")
    s.add_argument("report_id")
    s.set_defaults(func=cmd_delete_report)

    return p


def main(argv=None):
    args = build_parser().parse_args(argv)
    try:
        args.func(args)
    except MiastoAlertError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)
    except RuntimeError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
