import argparse
import json
import logging
import os
import sys
import time

from .decode import EegBands
from .find import find_devices, resolve_address
from .reader import SYNC_RETRIES
from .session import READ_TIMEOUT, SessionConfig

_GROUPS = {
    "wave": ("wave",),
    "bands": EegBands.FIELDS,
    "esense": ("attention", "meditation"),
    "quality": ("signal_quality",),
    "blink": ("blink",),
}


def _add_session_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--address",
        required=False,
        help="Serial port of the headset (e.g. /dev/rfcomm0). Omit to autodiscover.",
    )
    parser.add_argument(
        "--read-timeout",
        type=float,
        default=READ_TIMEOUT,
        help=f"Serial read timeout in seconds (default: {READ_TIMEOUT})",
    )
    parser.add_argument(
        "--sync-retries",
        type=int,
        default=SYNC_RETRIES,
        help=f"Bytes to scan for a sync marker before giving up (default: {SYNC_RETRIES})",
    )


def _config_from(ns) -> SessionConfig:
    return SessionConfig(
        address=ns.address,
        read_timeout=ns.read_timeout,
        sync_retries=ns.sync_retries,
        verbose=ns.verbose,
    )


def _print_samples(samples, groups, label: bool) -> None:
    wanted = {name for g in groups for name in _GROUPS[g]}
    for sample in samples:
        for name, value in sample.series():
            if name in wanted:
                print(f"{name.upper()}: {value}" if label else value)


def main(argv=None):
    parser = argparse.ArgumentParser(prog="OpenMindset", description="OpenMindset utilities")
    parser.add_argument("--verbose", "-v", action="store_true", help="Show debug output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # find subcommand
    p_find = subparsers.add_parser("find", help="List serial ports bound to a Mindset")

    def handle_find(ns):
        find_devices(verbose=True)
        return 0

    p_find.set_defaults(func=handle_find)

    # capture subcommand
    p_cap = subparsers.add_parser(
        "capture", help="Read samples from the headset (or a replayed capture)"
    )
    _add_session_args(p_cap)
    p_cap.add_argument(
        "--seconds", "-s", type=float, default=None, help="Capture for n seconds"
    )
    p_cap.add_argument(
        "--num", "-n", type=int, default=None, help="Capture up to n samples"
    )
    p_cap.add_argument(
        "--outfile",
        "-o",
        default=None,
        help="Write the capture as JSON to this file ('-' for stdout)",
    )
    p_cap.add_argument(
        "--replay", default=None, help="Replay a JSON capture instead of reading a headset"
    )
    p_cap.add_argument(
        "--groups",
        default="bands",
        help=(
            "Comma-separated series to print when not writing JSON. "
            "Options: wave, bands, esense, quality, blink, all. Default: bands"
        ),
    )

    def handle_capture(ns):
        from .record import record
        from .replay import ReplaySession
        from .session import DeviceSession

        if ns.seconds is not None and ns.seconds <= 0:
            parser.error("--seconds must be positive")
        if ns.num is not None and ns.num <= 0:
            parser.error("--num must be positive")
        groups = [g.strip().lower() for g in ns.groups.split(",") if g.strip()]
        if "all" in groups:
            groups = list(_GROUPS)
        unknown = [g for g in groups if g not in _GROUPS]
        if unknown:
            parser.error(f"unknown groups: {', '.join(unknown)}")

        if ns.replay:
            session = ReplaySession.from_file(ns.replay, config=_config_from(ns))
        else:
            if not ns.address:
                ns.address = resolve_address()
                print(f"Autodiscovered device: {ns.address}", file=sys.stderr)
            session = DeviceSession(_config_from(ns))

        with session:
            session.connect(ns.address)
            if ns.outfile:
                seconds = ns.seconds if ns.seconds or ns.num else 10.0
                try:
                    capture = record(session, seconds=seconds, count=ns.num)
                except KeyboardInterrupt:
                    print("Interrupted.", file=sys.stderr)
                    return 130
                text = json.dumps(capture.to_dict(), indent=2)
                if ns.outfile == "-":
                    print(text)
                else:
                    outdir = os.path.dirname(os.path.abspath(ns.outfile))
                    if outdir and not os.path.exists(outdir):
                        os.makedirs(outdir, exist_ok=True)
                    with open(ns.outfile, "w", encoding="utf-8") as f:
                        f.write(text)
                    print(
                        f"Wrote {len(capture.wave)} wave and {len(capture.delta)} band samples "
                        f"to {ns.outfile}",
                        file=sys.stderr,
                    )
                return 0

            label = len(groups) > 1 or ns.verbose
            session.start()
            start = time.monotonic()
            n = 0
            while True:
                batch = session.read_batch()
                _print_samples(batch, groups, label)
                n += len(batch)
                if ns.num is not None and n >= ns.num:
                    break
                if ns.seconds is not None and time.monotonic() - start >= ns.seconds:
                    break
                if not session.is_running:
                    break
                time.sleep(0.125)
        return 0

    p_cap.set_defaults(func=handle_capture)

    # serve subcommand
    p_serve = subparsers.add_parser(
        "serve", help="Host a headset connection in a background service process"
    )
    _add_session_args(p_serve)
    p_serve.add_argument(
        "--duration",
        "-d",
        type=float,
        default=None,
        help="Optional service lifetime in seconds. Omit to serve until interrupted.",
    )

    def handle_serve(ns):
        from .service import ServiceHost

        if ns.duration is not None and ns.duration <= 0:
            parser.error("--duration must be positive when provided")
        if not ns.address:
            ns.address = resolve_address()
            print(f"Autodiscovered device: {ns.address}", file=sys.stderr)
        level = logging.DEBUG if ns.verbose else logging.INFO
        with ServiceHost(_config_from(ns), log_level=level) as proxy:
            print(f"Mindset service listening on {proxy.address}")
            proxy.connect(ns.address)
            proxy.start()
            start = time.monotonic()
            while ns.duration is None or time.monotonic() - start < ns.duration:
                time.sleep(0.5)
        return 0

    p_serve.set_defaults(func=handle_serve)

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%H:%M:%S",
    )
    try:
        return args.func(args)
    except KeyboardInterrupt:
        print("Interrupted.")
        return 130
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
