from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Security, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import APIKeyHeader

from .deploy import Deployment, deploy_demo
from .models import (
    AdminAction,
    CreatePoolRequest, AddRewardTokenRequest, SetRewardRatesRequest, SetPausedRequest,
    DepositRequest, DepositForRequest, WithdrawRequest, ClaimRequest,
    OperationResponse, PendingRewardsResponse, PoolView, UserPosition,
)
from .service import (
    StakingService, StakingServiceError, PoolNotFoundError, PoolAlreadyExistsError,
    UnauthorizedError, ReentrancyError,
)

app = FastAPI(
    title="Staking Pools API",
    description="Multi-pool staking ledger with per-token accumulated-per-share rewards",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

deployment = deploy_demo()


def get_deployment() -> Deployment:
    return deployment


def get_service(current: Deployment = Depends(get_deployment)) -> StakingService:
    return current.service


api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def get_identity(
    api_key: Optional[str] = Security(api_key_header), current: Deployment = Depends(get_deployment),
) -> str:
    account = current.api_keys.get(api_key) if api_key else None
    if account is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing or unknown API key")
    return account


def _require_caller(caller: str, identity: str) -> None:
    if caller != identity:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail=f"Authenticated as {identity}, cannot act as {caller}",
        )


def _http_error(e: StakingServiceError) -> HTTPException:
    if isinstance(e, PoolNotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, UnauthorizedError):
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    if isinstance(e, (PoolAlreadyExistsError, ReentrancyError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/health", tags=["System"])
def health_check(current: Deployment = Depends(get_deployment)):
    return {"status": "healthy", "service": "staking-pools", "block": current.clock.current()}


@app.post("/blocks/advance", tags=["System"])
def advance_blocks(
    blocks: int = 1, current: Deployment = Depends(get_deployment), identity: str = Depends(get_identity),
):
    if not current.service.authorizer(identity, AdminAction.ADVANCE_BLOCKS):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"{identity} is not allowed to advance blocks")
    try:
        return {"block": current.clock.advance(blocks)}
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.post("/pools", response_model=OperationResponse, status_code=status.HTTP_201_CREATED, tags=["Admin"])
def create_pool(
    request: CreatePoolRequest,
    service: StakingService = Depends(get_service),
    identity: str = Depends(get_identity),
) -> OperationResponse:
    _require_caller(request.caller, identity)
    try:
        return service.create_pool(request)
    except StakingServiceError as e:
        raise _http_error(e)


@app.post("/pools/reward-tokens", response_model=OperationResponse, tags=["Admin"])
def add_reward_token(
    request: AddRewardTokenRequest,
    service: StakingService = Depends(get_service),
    identity: str = Depends(get_identity),
) -> OperationResponse:
    _require_caller(request.caller, identity)
    try:
        return service.add_reward_token(request)
    except StakingServiceError as e:
        raise _http_error(e)


@app.post("/pools/rates", response_model=OperationResponse, tags=["Admin"])
def set_reward_rates(
    request: SetRewardRatesRequest,
    service: StakingService = Depends(get_service),
    identity: str = Depends(get_identity),
) -> OperationResponse:
    _require_caller(request.caller, identity)
    try:
        return service.set_reward_rates(request)
    except StakingServiceError as e:
        raise _http_error(e)


@app.post("/pools/pause", response_model=OperationResponse, tags=["Admin"])
def set_paused(
    request: SetPausedRequest,
    service: StakingService = Depends(get_service),
    identity: str = Depends(get_identity),
) -> OperationResponse:
    _require_caller(request.caller, identity)
    try:
        return service.set_paused(request)
    except StakingServiceError as e:
        raise _http_error(e)


@app.post("/stake/deposit", response_model=OperationResponse, tags=["Staking"])
def deposit(
    request: DepositRequest,
    service: StakingService = Depends(get_service),
    identity: str = Depends(get_identity),
) -> OperationResponse:
    _require_caller(request.caller, identity)
    try:
        return service.deposit(request)
    except StakingServiceError as e:
        raise _http_error(e)


@app.post("/stake/deposit-for", response_model=OperationResponse, tags=["Staking"])
def deposit_for(
    request: DepositForRequest,
    service: StakingService = Depends(get_service),
    identity: str = Depends(get_identity),
) -> OperationResponse:
    _require_caller(request.caller, identity)
    try:
        return service.deposit_for(request)
    except StakingServiceError as e:
        raise _http_error(e)


@app.post("/stake/withdraw", response_model=OperationResponse, tags=["Staking"])
def withdraw(
    request: WithdrawRequest,
    service: StakingService = Depends(get_service),
    identity: str = Depends(get_identity),
) -> OperationResponse:
    _require_caller(request.caller, identity)
    try:
        return service.withdraw(request)
    except StakingServiceError as e:
        raise _http_error(e)


@app.post("/stake/claim", response_model=OperationResponse, tags=["Staking"])
def claim_rewards(
    request: ClaimRequest,
    service: StakingService = Depends(get_service),
    identity: str = Depends(get_identity),
) -> OperationResponse:
    _require_caller(request.caller, identity)
    try:
        return service.claim_rewards(request)
    except StakingServiceError as e:
        raise _http_error(e)


@app.get("/pools/{pool_id}", response_model=PoolView, tags=["Pools"])
def get_pool(pool_id: str, service: StakingService = Depends(get_service)) -> PoolView:
    try:
        return service.get_pool(pool_id)
    except StakingServiceError as e:
        raise _http_error(e)


@app.get("/pools/{pool_id}/exists", tags=["Pools"])
def pool_exists(pool_id: str, service: StakingService = Depends(get_service)):
    return {"pool_id": pool_id, "exists": service.pool_exists(pool_id)}


@app.get("/pools/{pool_id}/reward-tokens", tags=["Pools"])
def get_reward_tokens(pool_id: str, service: StakingService = Depends(get_service)):
    try:
        return {
            "pool_id": pool_id,
            "reward_tokens": service.reward_tokens(pool_id),
            "rates_per_tick": service.reward_rates(pool_id),
        }
    except StakingServiceError as e:
        raise _http_error(e)


@app.get("/pools/{pool_id}/users/{user}", response_model=UserPosition, tags=["Users"])
def get_position(pool_id: str, user: str, service: StakingService = Depends(get_service)) -> UserPosition:
    try:
        return service.get_position(pool_id, user)
    except StakingServiceError as e:
        raise _http_error(e)


@app.get("/pools/{pool_id}/users/{user}/pending", response_model=PendingRewardsResponse, tags=["Users"])
def get_pending_rewards(
    pool_id: str, user: str, current: Deployment = Depends(get_deployment),
) -> PendingRewardsResponse:
    service = current.service
    try:
        return PendingRewardsResponse(
            pool_id=pool_id,
            user=user,
            tick=current.clock.current(),
            reward_tokens=service.reward_tokens(pool_id),
            amounts=service.pending_rewards(pool_id, user),
        )
    except StakingServiceError as e:
        raise _http_error(e)


if __name__ == "__main__":
    import uvicorn
    from .config import configure_logging
    configure_logging()
    uvicorn.run(app, host="0.0.0.0", port=8000)
