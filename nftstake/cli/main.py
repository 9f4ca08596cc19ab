# MIT License
# Copyright (c) 2025 Hashborn

import argparse
import json
import os
import sys

import requests

from .keystore import KeyStore, KEYSTORE_DIR
from ..protocol.config.params import DECIMALS, DENOM
from ..protocol.types.common import OperationType
from ..protocol.types.staking import BatchRequest, ClaimRequest

DEFAULT_NODE = "http://localhost:8000"

def get_node_url(args):
    return args.node or os.environ.get("NFTSTAKE_NODE", DEFAULT_NODE)

def get_keystore(args) -> KeyStore:
    return KeyStore(args.keys_dir or os.environ.get("NFTSTAKE_KEYS", KEYSTORE_DIR))

def format_reward(amount: int) -> str:
    whole, frac = divmod(amount, 10**DECIMALS)
    return f"{whole}.{frac:0{DECIMALS}d}".rstrip("0").rstrip(".") + f" {DENOM}"

def _get(url: str) -> dict:
    try:
        resp = requests.get(url)
    except requests.RequestException as e:
        print(f"Connection error: {e}")
        sys.exit(1)
    if resp.status_code != 200:
        print(f"Error: {resp.text}")
        sys.exit(1)
    return resp.json()

def _post(url: str, payload: dict) -> dict:
    try:
        resp = requests.post(url, json=payload)
    except requests.RequestException as e:
        print(f"Connection error: {e}")
        sys.exit(1)
    if resp.status_code != 200:
        print(f"Error: {resp.text}")
        sys.exit(1)
    return resp.json()

# --- Keys Commands ---
def cmd_keys_add(args):
    ks = get_keystore(args)
    try:
        key = ks.create_key(args.name)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Key '{args.name}' created.")
    print(f"Address: {key['address']}")
    print(f"Pubkey:  {key['public_key']}")
    print("Important: Private key saved unencrypted. Do not share!")

def cmd_keys_import(args):
    ks = get_keystore(args)
    try:
        key = ks.import_key(args.name, args.private_key)
    except ValueError as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(f"Key '{args.name}' imported.")
    print(f"Address: {key['address']}")

def cmd_keys_list(args):
    keys = get_keystore(args).list_keys()
    if not keys:
        print("No keys found.")
        return

    print(f"{'Name':<15} {'Address':<45}")
    print("-" * 60)
    for k in keys:
        print(f"{k['name']:<15} {k['address']:<45}")

def cmd_keys_show(args):
    key = get_keystore(args).get_key(args.name)
    if not key:
        print(f"Key '{args.name}' not found.")
        sys.exit(1)
    print(json.dumps({k: v for k, v in key.items() if k != 'private_key'}, indent=2))

# --- Query Commands ---
def cmd_query_status(args):
    data = _get(f"{get_node_url(args)}/status")
    print(f"Network:       {data['network']}")
    print(f"Holder:        {data['holder']}")
    print(f"Total staked:  {data['total_staked']}")
    print(f"Reward rate:   {format_reward(int(data['reward_rate']))}/s")
    print(f"Period finish: {data['period_finish']} (active={data['period_active']})")
    print(f"Paused:        {data['paused']}")

def cmd_query_staker(args):
    data = _get(f"{get_node_url(args)}/staker/{args.address}")
    print(f"Staked:  {data['balance']} unit(s) {data['units']}")
    print(f"Earned:  {format_reward(int(data['earned']))}")
    print(f"Nonce:   {data['nonce']}")

def cmd_query_unit(args):
    data = _get(f"{get_node_url(args)}/unit/{args.unit}")
    custodian = data['custodian'] or "-"
    print(f"Unit {data['unit']}: custodian {custodian}")

def cmd_query_receipt(args):
    data = _get(f"{get_node_url(args)}/receipt/{args.op_id}")
    print(json.dumps(data, indent=2))

# --- Tx Commands ---
def _load_signer(args) -> dict:
    key = get_keystore(args).get_key(args.from_name)
    if not key:
        print(f"Key '{args.from_name}' not found.")
        sys.exit(1)
    return key

def _sign_and_post(args, op: OperationType, req) -> dict:
    key = _load_signer(args)
    url = get_node_url(args)
    req.staker = key['address']
    req.pub_key = key['public_key']
    req.nonce = _get(f"{url}/staker/{key['address']}")['nonce']
    req.sign(op.value, bytes.fromhex(key['private_key']))
    return _post(f"{url}/{op.value.lower()}", req.model_dump())

def _print_receipt(data: dict):
    print(f"Success! OpId: {data['op_id']}")
    if int(data.get('reward_paid', 0)):
        print(f"Reward paid: {format_reward(int(data['reward_paid']))}")

def cmd_tx_batch(args):
    # args.subcommand is one of stake / withdraw / exit
    op = OperationType(args.subcommand.upper())
    data = _sign_and_post(args, op, BatchRequest(staker="", units=args.units))
    _print_receipt(data)

def cmd_tx_claim(args):
    data = _sign_and_post(args, OperationType.CLAIM, ClaimRequest(staker=""))
    _print_receipt(data)

def main(argv=None):
    parser = argparse.ArgumentParser(prog="nftstake-cli", description="NFT Staking Client CLI")
    parser.add_argument("--node", help="Node URL (default: http://localhost:8000)")
    parser.add_argument("--keys-dir", help=f"Keystore directory (default: {KEYSTORE_DIR})")

    subparsers = parser.add_subparsers(dest="command", help="Sub-commands")

    # keys
    p_keys = subparsers.add_parser("keys", help="Manage keys")
    sp_keys = p_keys.add_subparsers(dest="subcommand")

    pk_add = sp_keys.add_parser("add", help="Create new key")
    pk_add.add_argument("name", help="Key name")

    pk_imp = sp_keys.add_parser("import", help="Import private key")
    pk_imp.add_argument("name", help="Key name")
    pk_imp.add_argument("--private-key", required=True, help="Hex private key")

    sp_keys.add_parser("list", help="List keys")

    pk_show = sp_keys.add_parser("show", help="Show key details")
    pk_show.add_argument("name", help="Key name")

    # query
    p_query = subparsers.add_parser("query", help="Query staking state")
    sp_query = p_query.add_subparsers(dest="subcommand")

    sp_query.add_parser("status", help="Engine status")

    pq_staker = sp_query.add_parser("staker", help="Stake and earned reward of an address")
    pq_staker.add_argument("address", help="Staker address")

    pq_unit = sp_query.add_parser("unit", help="Custodian of a unit")
    pq_unit.add_argument("unit", type=int, help="Unit id")

    pq_receipt = sp_query.add_parser("receipt", help="Operation receipt")
    pq_receipt.add_argument("op_id", help="Operation id")

    # tx
    p_tx = subparsers.add_parser("tx", help="Submit signed staking operations")
    sp_tx = p_tx.add_subparsers(dest="subcommand")

    for name, help_text in (("stake", "Stake units"),
                            ("withdraw", "Withdraw staked units"),
                            ("exit", "Withdraw units and claim reward")):
        pt = sp_tx.add_parser(name, help=help_text)
        pt.add_argument("units", type=int, nargs="*", help="Unit ids")
        pt.add_argument("--from", dest="from_name", required=True, help="Staker key name")

    pt_claim = sp_tx.add_parser("claim", help="Claim accrued reward")
    pt_claim.add_argument("--from", dest="from_name", required=True, help="Staker key name")

    args = parser.parse_args(argv)

    if args.command == "keys":
        if args.subcommand == "add": cmd_keys_add(args)
        elif args.subcommand == "import": cmd_keys_import(args)
        elif args.subcommand == "list": cmd_keys_list(args)
        elif args.subcommand == "show": cmd_keys_show(args)
        else: p_keys.print_help()
    elif args.command == "query":
        if args.subcommand == "status": cmd_query_status(args)
        elif args.subcommand == "staker": cmd_query_staker(args)
        elif args.subcommand == "unit": cmd_query_unit(args)
        elif args.subcommand == "receipt": cmd_query_receipt(args)
        else: p_query.print_help()
    elif args.command == "tx":
        if args.subcommand in ("stake", "withdraw", "exit"): cmd_tx_batch(args)
        elif args.subcommand == "claim": cmd_tx_claim(args)
        else: p_tx.print_help()
    else:
        parser.print_help()

if __name__ == "__main__":
    main()
