import argparse
import json
import logging
import os
import time
from typing import Optional

from ...protocol.config.params import NETWORKS, CURRENT_CONFIG, StakingConfig
from ...cli.keystore import KeyStore
from ..core.collaborators import NFTCollection, PauseSwitch, RewardTokenLedger
from ..core.engine import StakingEngine
from ..core.events import EventBus
from ..core.state import StakingState
from ..storage.db import StorageDB

logger = logging.getLogger(__name__)

DEVNET_HOLDERS = 3
UNITS_PER_HOLDER = 5


def _config_for(genesis: dict) -> StakingConfig:
    base = NETWORKS.get(genesis.get("network", ""), CURRENT_CONFIG)
    return StakingConfig(
        network_id=base.network_id,
        reward_duration=int(genesis.get("reward_duration", base.reward_duration)),
        reward_budget=int(genesis.get("reward_budget", base.reward_budget)),
        address_prefix=base.address_prefix,
        custody_module=base.custody_module,
        max_batch_size=base.max_batch_size,
    )


def cmd_init(args):
    """Initialize node: data dir and a devnet genesis.json."""
    data_dir = args.datadir
    os.makedirs(data_dir, exist_ok=True)

    genesis_path = os.path.join(data_dir, "genesis.json")
    if os.path.exists(genesis_path):
        print(f"Genesis already exists at {genesis_path}")
        return

    config = CURRENT_CONFIG
    # Devnet keys live next to the genesis so the CLI can sign for them (--keys-dir)
    keystore = KeyStore(os.path.join(data_dir, "keys"), prefix=config.address_prefix)
    admin = keystore.create_key("admin")["address"]

    collection = {}
    next_unit = 1
    for i in range(DEVNET_HOLDERS):
        holder = keystore.create_key(f"holder{i}")["address"]
        collection[holder] = list(range(next_unit, next_unit + UNITS_PER_HOLDER))
        next_unit += UNITS_PER_HOLDER

    genesis = {
        "network": config.network_id,
        "genesis_time": int(time.time()),
        "admin": admin,
        "collection": collection,
        "approve_custody": True,
        "reward_budget": str(config.reward_budget),
        "reward_duration": config.reward_duration,
    }
    with open(genesis_path, "w") as f:
        json.dump(genesis, f, indent=2)

    print(f"Genesis written to {genesis_path}")
    print(f"Keys written to {keystore.root_dir}")
    print(f"Admin:   {admin}")
    for holder, units in collection.items():
        print(f"Holder:  {holder} units={units}")


def build_engine_from_genesis(genesis: dict, db: Optional[StorageDB] = None) -> StakingEngine:
    """Mints the collection, funds the custody holder and starts the reward period."""
    config = _config_for(genesis)
    bus = EventBus()
    registry = NFTCollection(event_bus=bus)
    token = RewardTokenLedger()
    gate = PauseSwitch(owner=genesis["admin"])

    engine = StakingEngine(
        registry, token, gate,
        config=config,
        event_bus=bus,
        db=db,
        start_time=int(genesis.get("genesis_time", time.time())),
    )

    for holder, units in genesis.get("collection", {}).items():
        for unit in units:
            registry.mint(holder, int(unit))
        if genesis.get("approve_custody"):
            registry.set_approval_for_all(holder, engine.holder, True)

    token.mint(engine.holder, config.reward_budget)

    if db is not None:
        engine.persist()
    logger.info(f"Applied genesis: {len(genesis.get('collection', {}))} holders, "
                f"reward budget {config.reward_budget}")
    return engine


def load_engine(db: StorageDB, genesis: dict) -> Optional[StakingEngine]:
    """Restores a previously persisted engine, or None if the DB is empty."""
    state = StakingState.load(db)
    if state is None:
        return None

    bus = EventBus()
    registry = NFTCollection.from_dict(json.loads(db.get_state("collab:registry") or "{}"), event_bus=bus)
    token = RewardTokenLedger.from_dict(json.loads(db.get_state("collab:reward_token") or "{}"))
    raw_gate = db.get_state("collab:pause_gate")
    gate = PauseSwitch.from_dict(json.loads(raw_gate)) if raw_gate else PauseSwitch(owner=genesis["admin"])

    return StakingEngine(registry, token, gate, config=_config_for(genesis),
                         state=state, event_bus=bus, db=db)


def open_engine(data_dir: str) -> StakingEngine:
    genesis_path = os.path.join(data_dir, "genesis.json")
    if not os.path.exists(genesis_path):
        raise FileNotFoundError(f"No genesis.json in {data_dir}. Run 'init' first.")
    with open(genesis_path, "r") as f:
        genesis = json.load(f)

    db = StorageDB(os.path.join(data_dir, "state.db"))
    engine = load_engine(db, genesis)
    if engine is not None:
        logger.info(f"Engine restored: total_staked={engine.total_staked()}")
        return engine
    return build_engine_from_genesis(genesis, db)


def cmd_run(args):
    from ..rpc.api import start_rpc_server

    engine = open_engine(args.datadir)
    start_rpc_server(engine, host=args.host, port=args.port)


def main(argv=None):
    parser = argparse.ArgumentParser(description="NFT Staking Node CLI")
    parser.add_argument("--datadir", default="./.nftstake", help="Data directory")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init", help="Initialize node configuration")

    run_parser = subparsers.add_parser("run", help="Run the node")
    run_parser.add_argument("--host", default="0.0.0.0", help="RPC Host")
    run_parser.add_argument("--port", type=int, default=8000, help="RPC Port")

    args = parser.parse_args(argv)

    logging.basicConfig(
        level=os.environ.get("NFTSTAKE_LOG_LEVEL", "INFO"),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s',
        datefmt='%H:%M:%S'
    )

    if args.command == "init":
        cmd_init(args)
    elif args.command == "run":
        cmd_run(args)

if __name__ == "__main__":
    main()
