import json
import logging
from dataclasses import dataclass, field
from typing import Optional

from .clock import BlockClock
from .config import ADMIN_ADDRESS, API_KEYS, CUSTODY_ADDRESS, configure_logging
from .models import CreatePoolRequest, DepositRequest, ClaimRequest
from .service import StakingService, OwnerAuthorizer
from .token import InMemoryTokenLedger

logger = logging.getLogger(__name__)

STAKING_TOKEN = "StT"
REWARD_TOKEN = "RewT"
DEMO_POOL_ID = "stt-rewt"
ONE_TOKEN = 10 ** 18
INITIAL_REWARD_FUNDING = 1000 * ONE_TOKEN


@dataclass
class Deployment:
    service: StakingService
    ledger: InMemoryTokenLedger
    clock: BlockClock
    admin: str
    pool_id: str
    addresses: dict = field(default_factory=dict)
    api_keys: dict[str, str] = field(default_factory=dict)


def deploy_demo(
    clock: Optional[BlockClock] = None,
    admin: str = ADMIN_ADDRESS,
    custody_address: str = CUSTODY_ADDRESS,
    reward_rate: int = ONE_TOKEN,
    api_keys: Optional[dict[str, str]] = None,
) -> Deployment:
    """Deploy test tokens and a funded engine with one StT -> RewT pool."""
    clock = clock or BlockClock()
    ledger = InMemoryTokenLedger()
    ledger.deploy_token(STAKING_TOKEN, name="St20")
    ledger.deploy_token(REWARD_TOKEN, name="Rew20")

    service = StakingService(
        token_ledger=ledger,
        clock=clock,
        authorizer=OwnerAuthorizer(admin),
        custody_address=custody_address,
    )

    ledger.mint(REWARD_TOKEN, admin, INITIAL_REWARD_FUNDING)
    ledger.move(REWARD_TOKEN, admin, custody_address, INITIAL_REWARD_FUNDING)

    service.create_pool(CreatePoolRequest(
        caller=admin,
        pool_id=DEMO_POOL_ID,
        staked_asset=STAKING_TOKEN,
        reward_tokens=[REWARD_TOKEN],
        rates_per_tick=[reward_rate],
    ))

    addresses = {"StakingToken": STAKING_TOKEN, "RewardToken": REWARD_TOKEN, "StakingPools": custody_address}
    logger.info("Deployment is completed: %s", addresses)
    return Deployment(
        service=service, ledger=ledger, clock=clock, admin=admin, pool_id=DEMO_POOL_ID, addresses=addresses,
        api_keys=dict(API_KEYS if api_keys is None else api_keys),
    )


if __name__ == "__main__":
    configure_logging()
    deployment = deploy_demo()
    service, ledger, clock = deployment.service, deployment.ledger, deployment.clock

    for user in ("alice", "bob"):
        ledger.mint(STAKING_TOKEN, user, 100 * ONE_TOKEN)
        ledger.approve(STAKING_TOKEN, user, service.custody_address, 100 * ONE_TOKEN)

    service.deposit(DepositRequest(caller="alice", pool_id=DEMO_POOL_ID, amount=10 * ONE_TOKEN))
    clock.advance(10)
    service.deposit(DepositRequest(caller="bob", pool_id=DEMO_POOL_ID, amount=30 * ONE_TOKEN))
    clock.advance(10)

    pending = {user: service.pending_rewards(DEMO_POOL_ID, user) for user in ("alice", "bob")}
    print("Pending:", json.dumps(pending, indent=2))

    response = service.claim_rewards(ClaimRequest(caller="alice", pool_id=DEMO_POOL_ID))
    print(f"alice claimed {response.event.reward_amounts} {response.event.reward_tokens}")
    print("alice RewT balance:", ledger.balance_of(REWARD_TOKEN, "alice"))
