"""Command line interface for operating a Bitcoin anchoring node."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any, Sequence

from .config import AnchoringConfig, ConfigurationError, load_anchoring_config, load_rpc_config
from .rpc_client import AnchoringRpc, RPCError, RPCTransportError, format_rpc_hint
from .transactions import TxKind, classify

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

COMPACT_JSON_SEPARATORS = (",", ":")


class CLIError(RuntimeError):
    """Raised when CLI arguments are invalid."""


def _add_rpc_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--rpc-url", help="Override RPC endpoint URL")
    parser.add_argument("--rpc-host", help="Override RPC host")
    parser.add_argument("--rpc-port", type=int, help="Override RPC port")
    parser.add_argument("--rpc-user", help="Override RPC username")
    parser.add_argument("--rpc-password", help="Override RPC password")
    parser.add_argument("--rpc-wallet", help="Override RPC wallet name")
    https_group = parser.add_mutually_exclusive_group()
    https_group.add_argument(
        "--rpc-use-https",
        dest="rpc_use_https",
        action="store_const",
        const=True,
        help="Force HTTPS when contacting the node",
    )
    https_group.add_argument(
        "--rpc-use-http",
        dest="rpc_use_https",
        action="store_const",
        const=False,
        help="Force HTTP when contacting the node",
    )
    parser.set_defaults(rpc_use_https=None)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bitcoin anchoring service CLI")
    parser.add_argument(
        "--config",
        required=True,
        help="YAML file with the anchoring (and optionally rpc) sections",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    address_parser = subparsers.add_parser(
        "address", help="print the multisig redeem script and P2SH address"
    )
    address_parser.add_argument(
        "--json",
        dest="as_json",
        action="store_true",
        help="Emit the wallet description as JSON",
    )

    import_parser = subparsers.add_parser(
        "import-address", help="register the multisig address with the Bitcoin node"
    )
    import_parser.add_argument(
        "--rescan",
        action="store_true",
        help="Rescan the chain for existing wallet transactions",
    )
    _add_rpc_arguments(import_parser)

    observe_parser = subparsers.add_parser(
        "observe", help="list unspent wallet transactions and their anchoring payloads"
    )
    observe_parser.add_argument(
        "--json",
        dest="as_json",
        action="store_true",
        help="Emit one JSON object per transaction",
    )
    _add_rpc_arguments(observe_parser)
    return parser


def _rpc_from_args(args: argparse.Namespace) -> AnchoringRpc:
    overrides = {
        "user": args.rpc_user,
        "password": args.rpc_password,
        "host": args.rpc_host,
        "port": args.rpc_port,
        "use_https": args.rpc_use_https,
        "wallet": args.rpc_wallet,
        "endpoint": args.rpc_url,
    }
    return AnchoringRpc(load_rpc_config(config_path=args.config, overrides=overrides))


def _wallet_summary(cfg: AnchoringConfig) -> dict[str, Any]:
    multisig = cfg.multisig()
    return {
        "network": cfg.network,
        "address": multisig.address,
        "redeem_script": multisig.redeem_script.hex(),
        "majority_count": multisig.majority_count,
        "validators": len(cfg.validators),
    }


def cmd_address(args: argparse.Namespace) -> None:
    summary = _wallet_summary(load_anchoring_config(args.config))
    if args.as_json:
        print(json.dumps(summary, separators=COMPACT_JSON_SEPARATORS))
        return
    print(f"Address:       {summary['address']}")
    print(f"Network:       {summary['network']}")
    print(f"Threshold:     {summary['majority_count']} of {summary['validators']}")
    print(f"Redeem script: {summary['redeem_script']}")


def cmd_import_address(args: argparse.Namespace) -> None:
    cfg = load_anchoring_config(args.config)
    address = cfg.multisig().address
    rpc = _rpc_from_args(args)
    rpc.importaddress(address, "multisig", args.rescan, False)
    print(f"Imported {address}" + (" (rescanning)" if args.rescan else ""))


def cmd_observe(args: argparse.Namespace) -> None:
    cfg = load_anchoring_config(args.config)
    address = cfg.multisig().address
    rpc = _rpc_from_args(args)
    observed = rpc.unspent_transactions([address])
    if not observed:
        print(f"No unspent transactions for {address}.")
        return

    rows = []
    for item in sorted(observed, key=lambda entry: entry.confirmations, reverse=True):
        tx = classify(item.tx)
        row: dict[str, Any] = {
            "txid": tx.txid,
            "kind": tx.kind().value,
            "confirmations": item.confirmations,
        }
        payload = tx.payload()
        if payload is not None:
            row["height"] = payload.height
            row["block_hash"] = payload.block_hash
            if payload.prev_tx_chain:
                row["prev_tx_chain"] = payload.prev_tx_chain
            row["amount"] = tx.output_value(0)
        elif tx.kind() is TxKind.FUNDING:
            row["amount"] = tx.amount_to(cfg.multisig().script_pubkey)
        rows.append(row)

    if args.as_json:
        for row in rows:
            print(json.dumps(row, separators=COMPACT_JSON_SEPARATORS))
        return
    print(f"Found {len(rows)} unspent transactions for {address}")
    print(" conf | kind      |       amount | height     | txid")
    print("------+-----------+--------------+------------+-----------------------------------------------------------------")
    for row in rows:
        height = row.get("height", "")
        print(
            f"{row['confirmations']:>5} | {row['kind']:<9} | {row.get('amount', 0):>12} | {height!s:>10} | {row['txid']}"
        )


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        if args.command == "address":
            cmd_address(args)
        elif args.command == "import-address":
            cmd_import_address(args)
        elif args.command == "observe":
            cmd_observe(args)
        else:  # pragma: no cover - argparse enforces choices
            raise CLIError(f"Unknown command: {args.command}")
    except KeyboardInterrupt:  # pragma: no cover - interactive use
        logger.info("Interrupted by user")
    except RPCError as exc:
        hint = format_rpc_hint(exc)
        parser.exit(1, f"error: {exc}\n" + (f"hint: {hint}\n" if hint else ""))
    except (CLIError, ConfigurationError, RPCTransportError) as exc:
        parser.exit(1, f"error: {exc}\n")


if __name__ == "__main__":
    main(sys.argv[1:])
