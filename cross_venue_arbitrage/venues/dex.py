"""
Constant-product DEX adapter using web3.

``Web3DexClient`` talks to a Uniswap-V2-style router and pair (PancakeSwap on
BSC by default): reserves, router quotes, ERC20 approval and
swapExactTokensForTokens with a slippage-bounded minimum out. ``DexVenue``
exposes it through the quote-source and trade-sink capabilities.
"""

import logging
from decimal import Decimal
from typing import Dict, Optional

from eth_account import Account
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from ..config_loader import DexConfig, PairConfig, TokenConfig
from ..exceptions import ConfigurationError, OrderRejectedError, VenueError
from ..interfaces import TimeProvider, get_time_provider
from ..models import LegRecord, LegStatus, OrderSide, Quote, Venue
from ..price_feed import normalize_dex_quote
from .base import DexClient, PoolReserves, SwapQuote, SwapResult

logger = logging.getLogger(__name__)

# Uniswap V2 Pair ABI (minimal)
PAIR_ABI = [
    {
        "constant": True,
        "inputs": [],
        "name": "getReserves",
        "outputs": [
            {"name": "reserve0", "type": "uint112"},
            {"name": "reserve1", "type": "uint112"},
            {"name": "blockTimestampLast", "type": "uint32"},
        ],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [],
        "name": "token0",
        "outputs": [{"name": "", "type": "address"}],
        "type": "function",
    },
]

# Uniswap V2 Router ABI (minimal)
ROUTER_ABI = [
    {
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "path", "type": "address[]"},
        ],
        "name": "getAmountsOut",
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"name": "amountIn", "type": "uint256"},
            {"name": "amountOutMin", "type": "uint256"},
            {"name": "path", "type": "address[]"},
            {"name": "to", "type": "address"},
            {"name": "deadline", "type": "uint256"},
        ],
        "name": "swapExactTokensForTokens",
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

# ERC20 ABI (minimal)
ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "_owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "balance", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [
            {"name": "_owner", "type": "address"},
            {"name": "_spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "_spender", "type": "address"},
            {"name": "_value", "type": "uint256"},
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "type": "function",
    },
]

MAX_UINT256 = 2**256 - 1
RECEIPT_TIMEOUT_SECONDS = 120


def to_base_units(amount: float, decimals: int) -> int:
    return int(Decimal(str(amount)) * (Decimal(10) ** decimals))


def from_base_units(amount: int, decimals: int) -> float:
    return float(Decimal(amount) / (Decimal(10) ** decimals))


class Web3DexClient(DexClient):
    """DexClient for a Uniswap-V2-style pool using AsyncWeb3."""

    def __init__(
        self,
        w3: AsyncWeb3,
        config: DexConfig,
        pair: PairConfig,
        private_key: Optional[str] = None,
        time_provider: Optional[TimeProvider] = None,
    ):
        if config.pair_address is None or config.base_token is None or config.quote_token is None:
            raise ConfigurationError(
                "DEX pair_address, base_token and quote_token must be configured"
            )

        self.w3 = w3
        self.config = config
        self.pair = pair
        self.name = config.name
        self._time = time_provider or get_time_provider()
        self.tokens: Dict[str, TokenConfig] = {
            pair.base_asset: config.base_token,
            pair.quote_asset: config.quote_token,
        }

        self.account = Account.from_key(private_key) if private_key else None
        if self.account:
            logger.info(f"Loaded DEX account: {self.account.address}")
        else:
            logger.warning("No private key configured - DEX client is read-only")

        self.pair_contract = w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(config.pair_address), abi=PAIR_ABI
        )
        self.router = w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(config.router_address),
            abi=ROUTER_ABI,
        )
        self._token0: Optional[str] = None

    @classmethod
    def from_config(
        cls,
        config: DexConfig,
        pair: PairConfig,
        rpc_url: str,
        private_key: Optional[str] = None,
        time_provider: Optional[TimeProvider] = None,
    ) -> "Web3DexClient":
        w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url))
        return cls(w3, config, pair, private_key, time_provider)

    def _error(self, operation: str, error: Exception) -> VenueError:
        return VenueError(str(error), venue=self.name, operation=operation)

    def _token(self, symbol: str) -> TokenConfig:
        token = self.tokens.get(symbol)
        if token is None:
            raise VenueError(
                f"Unknown token {symbol}", venue=self.name, operation="resolve_token"
            )
        return token

    def _path(self, token_in: str, token_out: str):
        return [
            AsyncWeb3.to_checksum_address(self._token(token_in).address),
            AsyncWeb3.to_checksum_address(self._token(token_out).address),
        ]

    async def get_reserves(self) -> PoolReserves:
        base = self.config.base_token
        quote = self.config.quote_token
        try:
            if self._token0 is None:
                self._token0 = await self.pair_contract.functions.token0().call()
            reserve0, reserve1, block_ts = (
                await self.pair_contract.functions.getReserves().call()
            )
        except (Web3Exception, ValueError) as e:
            raise self._error("get_reserves", e) from e

        if self._token0.lower() == base.address.lower():
            reserve_base, reserve_quote = reserve0, reserve1
        else:
            reserve_base, reserve_quote = reserve1, reserve0

        return PoolReserves(
            reserve_base=int(reserve_base),
            reserve_quote=int(reserve_quote),
            base_decimals=base.decimals,
            quote_decimals=quote.decimals,
            block_timestamp=int(block_ts),
        )

    async def quote(
        self, token_in: str, token_out: str, amount_in: float, slippage_pct: float
    ) -> SwapQuote:
        token_in_cfg, token_out_cfg = self._token(token_in), self._token(token_out)
        amount_in_units = to_base_units(amount_in, token_in_cfg.decimals)
        try:
            amounts = await self.router.functions.getAmountsOut(
                amount_in_units, self._path(token_in, token_out)
            ).call()
        except (Web3Exception, ValueError) as e:
            raise self._error("quote", e) from e

        amount_out = from_base_units(amounts[-1], token_out_cfg.decimals)
        min_amount_out = amount_out * (1 - slippage_pct / 100)

        reserves = await self.get_reserves()
        mid = reserves.mid_price
        if token_in == self.pair.quote_asset:
            spot_out = amount_in / mid if mid else 0.0
        else:
            spot_out = amount_in * mid
        price_impact = (1 - amount_out / spot_out) * 100 if spot_out else 0.0

        return SwapQuote(
            amount_in=amount_in,
            amount_out=amount_out,
            min_amount_out=min_amount_out,
            price_impact=price_impact,
        )

    async def _gas_price(self) -> int:
        gas_price = await self.w3.eth.gas_price
        max_wei = int(self.config.max_gas_price_gwei * 10**9)
        if gas_price > max_wei:
            raise VenueError(
                f"Gas price {gas_price / 10**9:.2f} gwei exceeds max "
                f"{self.config.max_gas_price_gwei} gwei",
                venue=self.name,
                operation="gas_price",
            )
        return gas_price

    async def _send(self, tx: Dict, operation: str):
        signed = self.account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=RECEIPT_TIMEOUT_SECONDS
            )
        except TimeExhausted as e:
            raise VenueError(
                f"Transaction {tx_hash.hex()} not mined in {RECEIPT_TIMEOUT_SECONDS}s",
                venue=self.name,
                operation=operation,
            ) from e
        return tx_hash.hex(), receipt

    async def _ensure_allowance(self, token: TokenConfig, amount_units: int) -> None:
        contract = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(token.address), abi=ERC20_ABI
        )
        allowance = await contract.functions.allowance(
            self.account.address, self.router.address
        ).call()
        if allowance >= amount_units:
            return

        logger.info(f"Approving router to spend {token.address}")
        tx = await contract.functions.approve(
            self.router.address, MAX_UINT256
        ).build_transaction(
            {
                "from": self.account.address,
                "nonce": await self.w3.eth.get_transaction_count(self.account.address),
                "gasPrice": await self._gas_price(),
                "chainId": self.config.chain_id,
            }
        )
        _, receipt = await self._send(tx, "approve")
        if receipt["status"] != 1:
            raise OrderRejectedError(
                f"Approval reverted for {token.address}",
                venue=self.name,
                operation="approve",
                status="reverted",
            )

    async def swap(
        self, token_in: str, token_out: str, amount_in: float, min_amount_out: float
    ) -> SwapResult:
        if self.account is None:
            raise VenueError(
                "Cannot swap without a private key", venue=self.name, operation="swap"
            )

        token_in_cfg, token_out_cfg = self._token(token_in), self._token(token_out)
        amount_in_units = to_base_units(amount_in, token_in_cfg.decimals)
        min_out_units = to_base_units(min_amount_out, token_out_cfg.decimals)
        deadline = int(self._time.current_timestamp()) + self.config.deadline_minutes * 60

        try:
            await self._ensure_allowance(token_in_cfg, amount_in_units)
            balance_before = await self._token_balance_units(token_out_cfg)
            gas_price = await self._gas_price()

            tx = await self.router.functions.swapExactTokensForTokens(
                amount_in_units,
                min_out_units,
                self._path(token_in, token_out),
                self.account.address,
                deadline,
            ).build_transaction(
                {
                    "from": self.account.address,
                    "gas": self.config.gas_limit,
                    "gasPrice": gas_price,
                    "nonce": await self.w3.eth.get_transaction_count(
                        self.account.address
                    ),
                    "chainId": self.config.chain_id,
                }
            )
            tx_hash, receipt = await self._send(tx, "swap")
        except ContractLogicError as e:
            return SwapResult(
                tx_hash=None,
                amount_in=amount_in,
                amount_out=0.0,
                gas_used=0,
                gas_cost=0.0,
                success=False,
                error=f"swap reverted: {e}",
            )
        except (Web3Exception, ValueError) as e:
            raise self._error("swap", e) from e

        gas_used = int(receipt.get("gasUsed", 0))
        effective_price = int(receipt.get("effectiveGasPrice", gas_price))
        gas_cost = from_base_units(gas_used * effective_price, 18)

        if receipt["status"] != 1:
            return SwapResult(
                tx_hash=tx_hash,
                amount_in=amount_in,
                amount_out=0.0,
                gas_used=gas_used,
                gas_cost=gas_cost,
                success=False,
                error="transaction reverted",
            )

        balance_after = await self._token_balance_units(token_out_cfg)
        amount_out = from_base_units(balance_after - balance_before, token_out_cfg.decimals)
        logger.info(
            f"Swap {tx_hash}: {amount_in} {token_in} -> {amount_out} {token_out} "
            f"(gas {gas_used})"
        )
        return SwapResult(
            tx_hash=tx_hash,
            amount_in=amount_in,
            amount_out=amount_out,
            gas_used=gas_used,
            gas_cost=gas_cost,
            success=True,
        )

    async def _token_balance_units(self, token: TokenConfig) -> int:
        contract = self.w3.eth.contract(
            address=AsyncWeb3.to_checksum_address(token.address), abi=ERC20_ABI
        )
        return await contract.functions.balanceOf(self.account.address).call()

    async def get_balance(self, token: str) -> float:
        if self.account is None:
            return 0.0
        try:
            if token == self.pair.gas_asset:
                wei = await self.w3.eth.get_balance(self.account.address)
                return from_base_units(wei, 18)
            token_cfg = self._token(token)
            units = await self._token_balance_units(token_cfg)
        except (Web3Exception, ValueError) as e:
            raise self._error("get_balance", e) from e
        return from_base_units(units, token_cfg.decimals)


class DexVenue:
    """Quote source and trade sink over a DexClient"""

    venue = Venue.DEX

    def __init__(
        self,
        client: DexClient,
        pair: PairConfig,
        config: DexConfig,
        quote_slippage: float = 0.5,
        max_slippage: float = 0.5,
        time_provider: Optional[TimeProvider] = None,
    ):
        self.client = client
        self.pair = pair
        self.config = config
        self.quote_slippage = quote_slippage
        self.max_slippage = max_slippage
        self._time = time_provider or get_time_provider()

    async def fetch_quote(self, symbol: str) -> Quote:
        reserves = await self.client.get_reserves()
        return normalize_dex_quote(
            symbol, reserves, self.quote_slippage, self._time.current_timestamp()
        )

    async def get_free_balance(self, asset: str) -> float:
        return await self.client.get_balance(asset)

    async def buy(
        self, leg: LegRecord, quote_amount: float, reference_price: float
    ) -> LegRecord:
        return await self._swap(
            leg, self.pair.quote_asset, self.pair.base_asset, quote_amount, OrderSide.BUY
        )

    async def sell(
        self, leg: LegRecord, base_amount: float, reference_price: float
    ) -> LegRecord:
        return await self._swap(
            leg, self.pair.base_asset, self.pair.quote_asset, base_amount, OrderSide.SELL
        )

    async def _swap(
        self,
        leg: LegRecord,
        token_in: str,
        token_out: str,
        amount_in: float,
        side: OrderSide,
    ) -> LegRecord:
        leg.started_at = self._time.current_timestamp()
        quote = await self.client.quote(token_in, token_out, amount_in, self.max_slippage)
        logger.info(
            f"DEX {side.value}: {amount_in} {token_in} -> >= {quote.min_amount_out:.6f} "
            f"{token_out} (impact {quote.price_impact:.2f}%)"
        )

        leg.status = LegStatus.OPEN
        result = await self.client.swap(token_in, token_out, amount_in, quote.min_amount_out)
        leg.tx_hash = result.tx_hash
        leg.gas_cost = result.gas_cost * self.config.gas_asset_price

        if not result.success or result.amount_out <= 0:
            leg.status = LegStatus.FAILED
            leg.error = result.error or "swap returned no output"
            raise OrderRejectedError(
                f"DEX swap failed: {leg.error}",
                venue=Venue.DEX.value,
                operation=f"swap_{side.value}",
                order_id=result.tx_hash,
                status="reverted",
            )

        if side == OrderSide.BUY:
            leg.filled_amount = result.amount_out
            leg.quote_amount = amount_in
        else:
            leg.filled_amount = amount_in
            leg.quote_amount = result.amount_out
        leg.price = leg.quote_amount / leg.filled_amount
        # LP fee is already inside the realized swap price
        leg.fee = 0.0
        leg.status = LegStatus.FILLED
        leg.completed_at = self._time.current_timestamp()
        return leg

    async def cancel(self, leg: LegRecord) -> bool:
        # a submitted swap cannot be recalled
        return False

    async def close(self) -> None:
        await self.client.close()
