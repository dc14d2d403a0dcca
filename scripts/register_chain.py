"""Operator CLI for chain configuration and manual invoice issuance."""

import argparse
import json
from datetime import timedelta

from chainpay.common.config import settings
from chainpay.common.db import SessionLocal
from chainpay.common.models import ChainFamily
from chainpay.services.registry.service import ChainRegistry, RegistryError


def main() -> None:
    """CLI entrypoint for registry changes."""

    parser = argparse.ArgumentParser(description="Manage watched chains, accepted tokens, and invoices.")
    sub = parser.add_subparsers(dest="command", required=True)

    add_chain = sub.add_parser("add-chain", help="Register a chain and its xpub")
    add_chain.add_argument("--name", required=True)
    add_chain.add_argument("--rpc-url", required=True)
    add_chain.add_argument("--xpub", required=True)
    add_chain.add_argument("--native-symbol", required=True)
    add_chain.add_argument("--decimals", type=int, default=18)
    add_chain.add_argument("--family", choices=[f.value for f in ChainFamily], default=ChainFamily.ACCOUNT.value)
    add_chain.add_argument("--block-lag", type=int, default=3)
    add_chain.add_argument("--start-block", type=int, default=0, help="0 starts at the tip on first poll")

    add_token = sub.add_parser("add-token", help="Accept a token contract on a chain")
    add_token.add_argument("--chain", required=True)
    add_token.add_argument("--symbol", required=True)
    add_token.add_argument("--contract", required=True)
    add_token.add_argument("--decimals", type=int, required=True)

    remove = sub.add_parser("remove-chain", help="Delete a chain with no invoices")
    remove.add_argument("--name", required=True)

    issue = sub.add_parser("issue-invoice", help="Create a Pending invoice on a fresh address")
    issue.add_argument("--chain", required=True)
    issue.add_argument("--token", required=True)
    issue.add_argument("--amount-raw", type=int, required=True, help="Amount in the token's smallest unit")
    issue.add_argument("--ttl-minutes", type=int, default=30)
    issue.add_argument("--webhook-url", default=None)
    issue.add_argument("--webhook-secret", default=None)

    sub.add_parser("list", help="Print configured chains")
    args = parser.parse_args()

    registry = ChainRegistry(SessionLocal, settings.reorg_window_blocks)
    try:
        if args.command == "add-chain":
            state = registry.register_chain(
                args.name,
                args.rpc_url,
                args.xpub,
                args.native_symbol,
                args.decimals,
                family=ChainFamily(args.family),
                block_lag=args.block_lag,
                start_block=args.start_block,
            )
            print(f"Registered chain {state.name} (watcher picks it up on restart)")
        elif args.command == "add-token":
            token = registry.add_token(args.chain, args.symbol, args.contract, args.decimals)
            print(f"Added token {token.symbol} on {args.chain}")
        elif args.command == "remove-chain":
            registry.remove_chain(args.name)
            print(f"Removed chain {args.name}")
        elif args.command == "issue-invoice":
            invoice = registry.issue_invoice(
                args.chain,
                args.token,
                args.amount_raw,
                timedelta(minutes=args.ttl_minutes),
                webhook_url=args.webhook_url,
                webhook_secret=args.webhook_secret,
            )
            print(
                json.dumps(
                    {
                        "id": invoice.id,
                        "address": invoice.address,
                        "address_index": invoice.address_index,
                        "expires_at": invoice.expires_at.isoformat(),
                    },
                    indent=2,
                )
            )
        else:
            for state in registry.load_all():
                tokens = ", ".join(t.symbol for t in state.tokens) or "-"
                print(
                    f"{state.name} family={state.family.value} watermark={state.last_processed_block} "
                    f"block_lag={state.block_lag} native={state.native_symbol} tokens={tokens}"
                )
    except RegistryError as exc:
        print(f"error: {exc}")
        raise SystemExit(2)


if __name__ == "__main__":
    main()
