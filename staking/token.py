"""
Token ledger used as the engine's transfer capability.

Every move either completes in full or raises TransferFailedError
without touching any balance or allowance.
"""

import logging
from typing import Optional, Protocol

from .service import TransferFailedError

logger = logging.getLogger(__name__)


class TokenLedger(Protocol):
    def decimals(self, token: str) -> int:
        ...

    def move(
        self, token: str, sender: str, recipient: str, amount: int,
        spender: Optional[str] = None,
    ) -> None:
        ...


class InMemoryTokenLedger:
    def __init__(self):
        self.tokens: dict[str, dict] = {}
        self.balances: dict[tuple[str, str], int] = {}
        self.allowances: dict[tuple[str, str, str], int] = {}

    def deploy_token(self, token: str, name: str = "", decimals: int = 18) -> str:
        if token in self.tokens:
            raise ValueError(f"Token {token} already deployed")
        self.tokens[token] = {"symbol": token, "name": name or token, "decimals": decimals, "total_supply": 0}
        logger.info("Deployed token %s (%s, %d decimals)", token, name or token, decimals)
        return token

    def decimals(self, token: str) -> int:
        return self._token(token)["decimals"]

    def total_supply(self, token: str) -> int:
        return self._token(token)["total_supply"]

    def mint(self, token: str, account: str, amount: int) -> None:
        if amount < 0:
            raise ValueError("Mint amount cannot be negative")
        data = self._token(token)
        data["total_supply"] += amount
        self.balances[(token, account)] = self.balance_of(token, account) + amount

    def balance_of(self, token: str, account: str) -> int:
        return self.balances.get((token, account), 0)

    def allowance(self, token: str, owner: str, spender: str) -> int:
        return self.allowances.get((token, owner, spender), 0)

    def approve(self, token: str, owner: str, spender: str, amount: int) -> None:
        self._token(token)
        if amount < 0:
            raise ValueError("Allowance cannot be negative")
        self.allowances[(token, owner, spender)] = amount

    def move(
        self, token: str, sender: str, recipient: str, amount: int,
        spender: Optional[str] = None,
    ) -> None:
        if token not in self.tokens:
            raise TransferFailedError(f"Unknown token {token}")
        if amount < 0:
            raise TransferFailedError(f"Cannot move negative amount {amount}")

        balance = self.balance_of(token, sender)
        if balance < amount:
            raise TransferFailedError(
                f"Insufficient {token} balance for {sender}: has {balance}, needs {amount}"
            )

        if spender is not None and spender != sender:
            allowed = self.allowance(token, sender, spender)
            if allowed < amount:
                raise TransferFailedError(
                    f"Insufficient {token} allowance from {sender} to {spender}: has {allowed}, needs {amount}"
                )
            self.allowances[(token, sender, spender)] = allowed - amount

        self.balances[(token, sender)] = balance - amount
        self.balances[(token, recipient)] = self.balance_of(token, recipient) + amount

    def _token(self, token: str) -> dict:
        data = self.tokens.get(token)
        if data is None:
            raise TransferFailedError(f"Unknown token {token}")
        return data
