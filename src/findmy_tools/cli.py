"""
Command-line companion for Apple Find My accessories.

Subcommands:
    generate  - Generate fresh accessory key material
    keys      - Derive and display the rolling keys of an accessory (no auth)
    login     - Log in to an Apple account (incl. 2FA) and save the session
    fetch     - Derive keys + query Apple + decrypt location reports
    gpx       - Convert a previously saved JSON report file to GPX

For 'login' and 'fetch' you need an anisette-v3-server running locally:
    https://github.com/Dadoum/anisette-v3-server
"""

import argparse
import asyncio
import datetime
import getpass
import json
import logging
import os
import sys
from pathlib import Path

from findmy_tools.accessory import KEY_ROTATION, FindMyAccessory
from findmy_tools.account import DEFAULT_ACCOUNT_PATH, AppleAccount
from findmy_tools.anisette import DEFAULT_ANISETTE_URL, RemoteAnisetteProvider
from findmy_tools.errors import FindMyError
from findmy_tools.gpx import TrackPoint, build_gpx, merge_points, write_gpx
from findmy_tools.reports import LocationReport
from findmy_tools.state import LoginState
from findmy_tools.twofactor import SmsSecondFactor


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def load_accessory(path: str) -> FindMyAccessory:
    """Load an accessory from a JSON export or a decrypted OwnedBeacons plist."""
    p = Path(path).expanduser()
    if p.suffix == ".plist":
        return FindMyAccessory.from_plist(p, name=p.stem)
    return FindMyAccessory.from_json(p)


def _add_accessory_arg(parser):
    parser.add_argument(
        "-a",
        "--accessory",
        required=True,
        help="Accessory JSON file (from 'generate') or decrypted .plist",
    )


def _add_account_args(parser):
    parser.add_argument(
        "--account",
        default=DEFAULT_ACCOUNT_PATH,
        help=f"Account session file (default: {DEFAULT_ACCOUNT_PATH})",
    )
    parser.add_argument(
        "--anisette-url",
        default=DEFAULT_ANISETTE_URL,
        help=f"Anisette v3 server URL (default: {DEFAULT_ANISETTE_URL})",
    )


def _choose_2fa(methods):
    print("Choose a second factor:")
    for i, method in enumerate(methods):
        if isinstance(method, SmsSecondFactor):
            print(f"  [{i}] SMS to {method.phone_number}")
        else:
            print(f"  [{i}] Trusted device")
    choice = int(input("Method: ") or 0)
    return methods[choice]


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def cmd_generate(args):
    """Generate fresh accessory key material."""
    accessory = FindMyAccessory.generate(name=args.name)
    data = accessory.to_json(args.output)

    if args.output:
        print(f"Accessory written to {args.output}")
    else:
        print(json.dumps(data, indent=2))

    keys = accessory.keys_at_index(0)
    print("\nInitial keys (index 0):")
    for key in sorted(keys, key=lambda k: k.key_type.value):
        print(f"  {key.key_type.name:9s} adv={key.adv_key_b64}")
        print(f"            hash={key.hashed_adv_key_b64}")


def cmd_keys(args):
    """Derive and display the rolling keys of an accessory."""
    accessory = load_accessory(args.accessory)

    now = datetime.datetime.now(tz=datetime.timezone.utc)
    start = max(now - datetime.timedelta(hours=args.hours), accessory.paired_at)

    print(f"Paired at: {accessory.paired_at.isoformat()}")
    print(f"First secondary rollover: {accessory.first_rollover().isoformat()}")
    print()

    offset = accessory.secondary_offset()
    date = start
    while date < now:
        idx = accessory.index_at(date)
        stamp = date.astimezone(datetime.timezone.utc).strftime("%Y-%m-%d %H:%M UTC")
        for key in sorted(
            accessory.keys_at_index(idx, offset), key=lambda k: k.key_type.value
        ):
            print(
                f"  [{idx:6d}] {stamp}"
                f"  {key.key_type.name:9s} hash={key.hashed_adv_key_b64}"
            )
        date += KEY_ROTATION


async def _login(args) -> int:
    anisette = RemoteAnisetteProvider(args.anisette_url)
    account = AppleAccount(anisette)
    try:
        username = args.username or input("Apple ID: ")
        password = os.environ.get("APPLE_ID_PASSWORD") or getpass.getpass(
            "Password: "
        )

        state = await account.login(username, password)
        if state == LoginState.REQUIRE_2FA:
            methods = await account.get_2fa_methods()
            if not methods:
                print("Error: no 2FA methods available", file=sys.stderr)
                return 1
            method = _choose_2fa(methods)
            await method.request()
            code = input("Enter 2FA code: ")
            state = await method.submit(code)

        if state != LoginState.LOGGED_IN:
            print(f"Error: login ended in state {state}", file=sys.stderr)
            return 1

        account.to_json(args.account)
        print(f"Logged in as {account.account_name or username}")
        print(f"Session saved to {args.account}")
        return 0
    finally:
        await account.close()


def cmd_login(args):
    """Log in to an Apple account and save the session."""
    return asyncio.run(_login(args))


async def _fetch(args, account_path: Path) -> list[LocationReport]:
    accessory = load_accessory(args.accessory)

    anisette = RemoteAnisetteProvider(args.anisette_url)
    account = AppleAccount.from_file(account_path, anisette)
    try:
        return await accessory.fetch_last_reports(account, hours=args.hours)
    finally:
        await account.close()


def cmd_fetch(args):
    """Fetch and decrypt location reports of an accessory."""
    account_path = Path(args.account).expanduser()
    if not account_path.exists():
        print(
            f"Error: account file not found at {account_path}\n"
            "Log in first with: findmy login",
            file=sys.stderr,
        )
        sys.exit(1)

    reports = asyncio.run(_fetch(args, account_path))

    print(f"\n{len(reports)} locations decoded:\n")
    for r in reports:
        print(
            f"  {r.timestamp.isoformat()}  "
            f"({r.latitude:.6f}, {r.longitude:.6f})  "
            f"conf={r.confidence}  "
            f"status={r.status:#04x}"
        )
        print(f"    https://maps.google.com/maps?q={r.latitude},{r.longitude}")

    if args.output:
        with open(args.output, "w") as f:
            json.dump([r.to_dict() for r in reports], f, indent=2)
        print(f"\nResults saved to {args.output}")

    if args.gpx:
        n = write_gpx((TrackPoint.from_report(r) for r in reports), args.gpx)
        print(f"GPX with {n} points written to {args.gpx}", file=sys.stderr)

    return reports


def cmd_gpx(args):
    """Convert a JSON report file to GPX."""
    with open(args.input) as f:
        points = [TrackPoint.from_dict(d) for d in json.load(f)]

    if args.all:
        points.sort(key=lambda p: (p.timestamp, p.key_id))
    else:
        merged = merge_points(points)
        if len(merged) != len(points):
            print(
                f"Merged {len(points)} reports -> {len(merged)} points",
                file=sys.stderr,
            )
        points = merged

    gpx = build_gpx(points)

    if args.output:
        with open(args.output, "w") as f:
            f.write(gpx)
        print(f"GPX written to {args.output}", file=sys.stderr)
    else:
        print(gpx, end="")


# ---------------------------------------------------------------------------
# CLI setup
# ---------------------------------------------------------------------------


def add_subcommands(subparsers) -> None:
    """Register findmy subcommands on the given subparsers object."""
    # --- generate ---
    p_gen = subparsers.add_parser(
        "generate", help="Generate fresh accessory key material"
    )
    p_gen.add_argument("-o", "--output", help="Output JSON file path")
    p_gen.add_argument("--name", help="Accessory name")
    p_gen.set_defaults(func=cmd_generate)

    # --- keys ---
    p_keys = subparsers.add_parser(
        "keys", help="Derive and display rolling keys"
    )
    _add_accessory_arg(p_keys)
    p_keys.add_argument(
        "-H",
        "--hours",
        type=int,
        default=24,
        help="Hours to look back (default: 24)",
    )
    p_keys.set_defaults(func=cmd_keys)

    # --- login ---
    p_login = subparsers.add_parser(
        "login", help="Log in to an Apple account"
    )
    _add_account_args(p_login)
    p_login.add_argument("-u", "--username", help="Apple ID")
    p_login.set_defaults(func=cmd_login)

    # --- fetch ---
    p_fetch = subparsers.add_parser(
        "fetch", help="Fetch and decrypt location reports"
    )
    _add_accessory_arg(p_fetch)
    _add_account_args(p_fetch)
    p_fetch.add_argument(
        "-H",
        "--hours",
        type=int,
        default=24,
        help="Hours to look back (default: 24)",
    )
    p_fetch.add_argument(
        "-o", "--output", help="Save results to JSON file"
    )
    p_fetch.add_argument(
        "--gpx", help="Also export results as GPX file"
    )
    p_fetch.set_defaults(func=cmd_fetch)

    # --- gpx ---
    p_gpx = subparsers.add_parser(
        "gpx", help="Convert JSON report file to GPX"
    )
    p_gpx.add_argument("input", help="Input JSON file from 'fetch -o'")
    p_gpx.add_argument(
        "-o", "--output", help="Output GPX file (default: stdout)"
    )
    p_gpx.add_argument(
        "--all",
        action="store_true",
        help="Include all reports (don't cluster nearby points)",
    )
    p_gpx.set_defaults(func=cmd_gpx)


def main():
    parser = argparse.ArgumentParser(
        prog="findmy",
        description="Apple Find My accessory companion",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable debug logging"
    )
    sub = parser.add_subparsers(dest="command", required=True)
    add_subcommands(sub)
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        result = args.func(args)
    except (FindMyError, ValueError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    if isinstance(result, int):
        sys.exit(result)


if __name__ == "__main__":
    main()
