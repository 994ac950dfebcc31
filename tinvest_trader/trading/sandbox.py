# tinvest_trader/trading/sandbox.py - Sandbox account management
import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from tinvest_trader.models.trading import decimal_to_quotation, quotation_to_decimal
from tinvest_trader.trading.broker_adapter import BrokerAdapter
from tinvest_trader.utils.exceptions import BrokerAPIError

logger = logging.getLogger(__name__)


class SandboxAccountService:
    """Operator actions on broker sandbox accounts.

    These are explicit, one-off calls, so gateway failures propagate.
    """

    def __init__(self, gateway: BrokerAdapter):
        self.gateway = gateway

    async def open_account(self, name: Optional[str] = None) -> str:
        payload = {"name": name} if name else {}
        data = await self.gateway.call("SandboxService/OpenSandboxAccount", payload)
        account_id = data.get("accountId")
        if not account_id:
            raise BrokerAPIError(
                "Sandbox account was not created", endpoint="SandboxService/OpenSandboxAccount",
                details=data
            )
        logger.info(f"Opened sandbox account {account_id}")
        return account_id

    async def pay_in(self, account_id: str, amount, currency: str = "RUB") -> Decimal:
        """Credit the sandbox account.

        Returns:
            Account balance after the pay-in
        """
        amount = Decimal(str(amount))
        if amount <= 0:
            raise ValueError(f"Pay-in amount must be positive, got {amount}")

        data = await self.gateway.call("SandboxService/SandboxPayIn", {
            "accountId": account_id,
            "amount": decimal_to_quotation(amount, currency=currency.lower()),
        })
        balance = quotation_to_decimal(data.get("balance"))
        logger.info(f"Paid {amount} {currency} into sandbox account {account_id}; balance {balance}")
        return balance

    async def close_account(self, account_id: str) -> None:
        await self.gateway.call("SandboxService/CloseSandboxAccount", {"accountId": account_id})
        logger.info(f"Closed sandbox account {account_id}")

    async def list_accounts(self) -> List[Dict[str, Any]]:
        data = await self.gateway.call("SandboxService/GetSandboxAccounts", {})
        return data.get("accounts") or []
