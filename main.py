#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import argparse
import logging
import sys
from pathlib import Path

from analyzer_errors import CaptureReadError
from behinder_pcap_analyzer import AnalyzerConfig, NoKeyError, process_behinder_pcap
from pcap_loader import BACKENDS

log = logging.getLogger("webshell_traffic")


def build_parser():
    parser = argparse.ArgumentParser(
        prog="webshell-traffic",
        description="Webshell traffic analysis: recover decrypted artifacts from a capture.",
    )
    parser.add_argument("-v", "--verbose", action="count", default=0, help="Show debug output.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    behinder = subparsers.add_parser("behinder", help="Decrypt Behinder (冰蝎) traffic in a pcap/pcapng file.")
    behinder.add_argument("-i", "--in", dest="input", required=True, help="Path to the input capture file.")
    behinder.add_argument("-o", "--out", dest="outdir", default="behinder/",
                          help="Directory for the recovered artifacts (default: behinder/).")
    behinder.add_argument("-k", "--key",
                          help="16 character key, 32 hex digits, or the connection password. "
                               "Searched for in the traffic when omitted.")
    behinder.add_argument("--backend", choices=sorted(BACKENDS), default="tshark",
                          help="Packet dissector to use (default: tshark).")
    behinder.add_argument("-j", "--jobs", type=int, default=1, help="Streams to process in parallel.")
    behinder.add_argument("--no-report", dest="report", action="store_false",
                          help="Do not write report.xlsx into the output directory.")
    behinder.add_argument("--keep-unknown", action="store_true",
                          help="Accept decrypted binary payloads without a known file signature.")
    return parser


def setup_logging(verbose: int):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        stream=sys.stderr,
    )
    # scapy is noisy about missing optional dependencies
    logging.getLogger("scapy").setLevel(logging.ERROR)


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    config = AnalyzerConfig(
        input_path=Path(args.input),
        outdir=Path(args.outdir),
        key=args.key,
        backend=args.backend,
        jobs=max(1, args.jobs),
        report=args.report,
        keep_unknown=args.keep_unknown,
    )
    try:
        process_behinder_pcap(config)
    except CaptureReadError as e:
        log.error(f"[!] Error: {e.describe()}")
        return 1
    except NoKeyError as e:
        log.error(f"[!] Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
