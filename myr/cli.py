"""Command-line surface: ``myr <command>`` / ``python -m myr <command>``.

Every ``cmd_*`` handler returns a process exit code. ``main`` maps
``MyrError`` subclasses to their ``exit_code`` so security aborts remain
distinguishable by scripts driving the tool.
"""

from __future__ import annotations

import argparse
import json
import logging
import pathlib
import sys
from datetime import date
from typing import List, Optional

from myr import __version__
from myr.config import MyrConfig, load_config, persist_node_uuid
from myr.core import parse_day
from myr.errors import EXIT_FAILURE, EXIT_OK, KeyBindingMismatch, MyrError, SecurityAbort
from myr.exporter import DEFAULT_MIN_RATING, export_records, select_for_export
from myr.identity import NodeIdentity, generate_node_uuid, identity_card
from myr.importer import import_artifacts, load_artifacts
from myr.keys import generate_keypair, load_keypair, load_public_key_file, write_keypair
from myr.observability import configure_logging, start_run
from myr.peers import PeerTrustStore
from myr.signing import sign_record, sign_unsigned
from myr.store import RecordStore

logger = logging.getLogger(__name__)


def _err(msg: str) -> None:
    print(msg, file=sys.stderr)


def _open_store(cfg: MyrConfig, identity: NodeIdentity) -> RecordStore:
    store = RecordStore.open(cfg.path("db_path"), identity.node_id)
    if store.migrated_ids:
        print(f"Migrated {store.migrated_ids} legacy record id(s) to the {identity.node_id}-YYYYMMDD-NNN scheme")
    return store


def cmd_keygen(args: argparse.Namespace) -> int:
    cfg: MyrConfig = args.cfg
    identity = NodeIdentity.from_config(cfg)
    keypair = generate_keypair()
    priv_path, pub_path = write_keypair(identity.keys_dir, identity.node_id, keypair, overwrite=args.force)
    print(f"Private key: {priv_path}")
    print(f"Public key:  {pub_path}")
    print(f"Fingerprint: {keypair.fingerprint}")

    if not cfg.get("node_uuid"):
        node_uuid = generate_node_uuid()
        target = persist_node_uuid(cfg, node_uuid)
        print(f"node_uuid:   {node_uuid} (written to {target})")
    else:
        print(f"node_uuid:   {cfg.get('node_uuid')} (unchanged)")
    print(f"\nShare {pub_path.name} with peers so they can verify your exports.")
    return EXIT_OK


def cmd_identity(args: argparse.Namespace) -> int:
    identity = NodeIdentity.from_config(args.cfg)
    card = identity_card(identity)
    if args.json:
        print(json.dumps(card, indent=2))
        return EXIT_OK
    print("MYR Node Identity")
    print(f"  node_id:     {card['node_id']}")
    if card["node_name"]:
        print(f"  node_name:   {card['node_name']}")
    print(f"  node_uuid:   {card['node_uuid'] or 'not set (run myr keygen to generate)'}")
    print(f"  key:         {card['key_fingerprint'] or 'no public key found for ' + identity.node_id}")
    print(f"  Fingerprint: {card['card']}")
    print("Share this identity card with peers before exchanging MYR files.")
    return EXIT_OK


def cmd_sign(args: argparse.Namespace) -> int:
    cfg: MyrConfig = args.cfg
    identity = NodeIdentity.from_config(cfg)
    keypair = load_keypair(identity.keys_dir, identity.node_id)
    with _open_store(cfg, identity) as store:
        if args.all:
            signed = sign_unsigned(store, keypair, identity)
            print(f"Signed {len(signed)} record(s)")
            for record_id in signed:
                print(f"  {record_id}")
            return EXIT_OK

        record = store.require(args.id)
        try:
            envelope = sign_record(store, record, keypair, identity)
        except ValueError as ex:
            _err(f"ERROR: {ex}")
            return EXIT_FAILURE

    text = json.dumps(envelope, indent=2, ensure_ascii=False)
    if args.out:
        out = pathlib.Path(args.out)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_text(text + "\n", encoding="utf-8")
        print(f"Signed {args.id} -> {out}")
    else:
        print(text)
    return EXIT_OK


def cmd_export(args: argparse.Namespace) -> int:
    cfg: MyrConfig = args.cfg
    identity = NodeIdentity.from_config(cfg)
    keypair = load_keypair(identity.keys_dir, identity.node_id)
    ids = [s.strip() for s in args.ids.split(",") if s.strip()] if args.ids else None
    out_dir = pathlib.Path(args.out_dir) if args.out_dir else cfg.path("export_path")

    with _open_store(cfg, identity) as store:
        records = select_for_export(store, ids=ids, min_rating=args.min_rating, since=args.since)
        result = export_records(store, records, keypair, identity, out_dir)

    if result.path is None:
        print("No records match the export selection")
        return EXIT_OK
    print(f"Exported {result.count} record(s) to {result.path}")
    if result.newly_signed:
        print(f"  newly signed: {len(result.newly_signed)}")
    return EXIT_OK


def _import_file(cfg: MyrConfig, value: str) -> pathlib.Path:
    """A bare file name that is not in the working directory is looked up in import_path."""
    p = pathlib.Path(value).expanduser()
    if p.is_absolute() or p.exists():
        return p
    return cfg.path("import_path") / p


def cmd_import(args: argparse.Namespace) -> int:
    cfg: MyrConfig = args.cfg
    identity = NodeIdentity.from_config(cfg)
    artifacts = load_artifacts(_import_file(cfg, args.file))
    peer_key = load_public_key_file(args.peer_key) if args.peer_key else None

    with _open_store(cfg, identity) as store:
        peers = PeerTrustStore(store.conn)
        try:
            report = import_artifacts(store, peers, identity, artifacts, peer_key=peer_key, keys_dir=identity.keys_dir)
        except KeyBindingMismatch as ex:
            partial = getattr(ex, "report", None)
            if partial is not None:
                print("\n".join(partial.lines()))
            raise

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        print("\n".join(report.lines()))
    return EXIT_OK


def cmd_rate(args: argparse.Namespace) -> int:
    cfg: MyrConfig = args.cfg
    identity = NodeIdentity.from_config(cfg)
    with _open_store(cfg, identity) as store:
        record = store.rate_record(args.id, args.rating, args.notes)
    print(f"Rated {record.id}: {record.verification.operator_rating}/5")
    if record.signed_artifact:
        print("  note: the cached signature predates this rating; re-run `myr sign --id` to update it")
    return EXIT_OK


def cmd_peers_list(args: argparse.Namespace) -> int:
    cfg: MyrConfig = args.cfg
    identity = NodeIdentity.from_config(cfg)
    with _open_store(cfg, identity) as store:
        entries = PeerTrustStore(store.conn).list_peers()
        rows = [
            {
                "node_id": e.node_id,
                "node_name": e.node_name,
                "fingerprint": e.fingerprint,
                "added_at": e.added_at,
                "last_import_at": e.last_import_at,
                "myr_count": e.myr_count,
            }
            for e in entries
        ]
    if args.json:
        print(json.dumps(rows, indent=2))
        return EXIT_OK
    if not rows:
        print("No peers bound yet")
    for r in rows:
        print(f"{r['node_id']:<20}  {r['fingerprint']}  records={r['myr_count']}  last_import={r['last_import_at'] or '-'}")
    return EXIT_OK


def cmd_peers_remove(args: argparse.Namespace) -> int:
    cfg: MyrConfig = args.cfg
    identity = NodeIdentity.from_config(cfg)
    with _open_store(cfg, identity) as store:
        removed = PeerTrustStore(store.conn).remove(args.node_id)
    if not removed:
        _err(f"ERROR: no binding for peer {args.node_id}")
        return EXIT_FAILURE
    print(f"Removed binding for {args.node_id}; the next import from it binds a new key")
    return EXIT_OK


def _day(value: str) -> date:
    try:
        return parse_day(value)
    except ValueError as ex:
        raise argparse.ArgumentTypeError(str(ex)) from ex


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="myr", description="Sign, export and import MYR records between nodes")
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    ap.add_argument("--config", default="", help="Path to myr.yaml (default: $MYR_CONFIG or ./myr.yaml)")
    ap.add_argument("--log-level", default="", choices=["", "debug", "info", "warning", "error"])
    ap.add_argument("--log-format", default="", choices=["", "text", "json"])
    sub = ap.add_subparsers(dest="cmd", required=True)

    k = sub.add_parser("keygen", help="Generate this node's Ed25519 keypair")
    k.add_argument("--force", action="store_true", help="Overwrite an existing keypair")
    k.set_defaults(func=cmd_keygen)

    i = sub.add_parser("identity", help="Print this node's identity card")
    i.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    i.set_defaults(func=cmd_identity)

    s = sub.add_parser("sign", help="Sign local records")
    target = s.add_mutually_exclusive_group(required=True)
    target.add_argument("--id", default="", help="Record id to (re-)sign")
    target.add_argument("--all", action="store_true", help="Sign every unsigned local record")
    s.add_argument("--out", default="", help="Write the envelope here instead of stdout (with --id)")
    s.set_defaults(func=cmd_sign)

    e = sub.add_parser("export", help="Write signed records to an export file")
    sel = e.add_mutually_exclusive_group(required=True)
    sel.add_argument("--all", action="store_true", help="Every local record meeting --min-rating")
    sel.add_argument("--since", type=_day, default=None, help="Records created on or after YYYY-MM-DD")
    sel.add_argument("--ids", default="", help="Comma-separated record ids")
    e.add_argument("--min-rating", type=int, default=DEFAULT_MIN_RATING, choices=range(1, 6))
    e.add_argument("--out-dir", default="", help="Output directory (default: export_path)")
    e.set_defaults(func=cmd_export)

    im = sub.add_parser("import", help="Verify and import a peer's export file")
    im.add_argument("--file", required=True, help="Path to a .myr.json export file (relative names also tried in import_path)")
    im.add_argument("--peer-key", default="", help="Path to the peer's public key PEM")
    im.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    im.set_defaults(func=cmd_import)

    r = sub.add_parser("rate", help="Record the operator's rating of a local record")
    r.add_argument("--id", required=True)
    r.add_argument("--rating", required=True, type=int, choices=range(1, 6))
    r.add_argument("--notes", default=None)
    r.set_defaults(func=cmd_rate)

    p = sub.add_parser("peers", help="Inspect or edit peer key bindings")
    p_sub = p.add_subparsers(dest="peers_cmd", required=True)
    pl = p_sub.add_parser("list")
    pl.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    pl.set_defaults(func=cmd_peers_list)
    pr = p_sub.add_parser("remove", help="Drop a binding so the peer can be bound to a new key")
    pr.add_argument("node_id")
    pr.set_defaults(func=cmd_peers_remove)

    return ap


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)

    try:
        cfg = load_config(args.config or None)
        cfg.require_valid([
            name for name, flag in (("log_level", args.log_level), ("log_format", args.log_format)) if not flag
        ])
        configure_logging(
            level=args.log_level or cfg.get("log_level"),
            fmt=args.log_format or cfg.get("log_format"),
        )
        start_run()
        args.cfg = cfg
        return args.func(args)
    except SecurityAbort as ex:
        logger.error(str(ex), extra={"error_code": type(ex).__name__})
        _err(f"ABORT: {ex}")
        if ex.remediation:
            _err(ex.remediation)
        return ex.exit_code
    except MyrError as ex:
        _err(f"ERROR: {ex}")
        return ex.exit_code


if __name__ == "__main__":
    sys.exit(main())
