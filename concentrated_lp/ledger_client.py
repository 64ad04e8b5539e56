"""
Ledger clients for concentrated liquidity positions.
Defines the interface the engine consumes and a web3 implementation
against the NonfungiblePositionManager / Factory / Pool contracts.
"""
import asyncio
import logging
import math
from abc import ABC, abstractmethod
from decimal import Decimal, localcontext
from typing import Any, Dict, List, Optional

from eth_account import Account
from web3 import Web3

from .config import Config
from .tick_math import TickMath

logger = logging.getLogger(__name__)

MAX_UINT128 = 2 ** 128 - 1
# Enough digits to carry a uint128 liquidity through the decimals scaling exactly
LIQUIDITY_PRECISION = 80
ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


class LedgerClient(ABC):
    """
    Interface to the external ledger holding liquidity positions.

    Amounts cross this boundary as Decimal (or anything Decimal accepts)
    in whole-token units. Ticks and liquidity refer to the decimals-adjusted
    price, the same price calculate_spot_price returns. Every method may fail
    transiently; callers wrap them in the retry helper.
    """

    @abstractmethod
    async def add_liquidity(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Open a position. Returns {token_id?, liquidity, amount0, amount1}"""

    @abstractmethod
    async def remove_liquidity(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Withdraw liquidity. Returns {amount0, amount1}"""

    @abstractmethod
    async def collect_fees(self, params: Dict[str, Any]) -> Dict[str, Any]:
        """Collect owed fees. Returns {amount0, amount1}"""

    @abstractmethod
    async def get_user_positions(self, owner: str, page: int, page_size: int) -> List[Dict[str, Any]]:
        """One page of the owner's positions, oldest first"""

    @abstractmethod
    async def get_pool_data(self, token0: str, token1: str, fee: int) -> Dict[str, Any]:
        """Pool state. Contains at least sqrt_price_x96 and liquidity"""

    @abstractmethod
    async def calculate_spot_price(self, token0: str, token1: str, sqrt_price_x96: Any) -> Decimal:
        """Price of token0 in token1 for the given sqrt price"""


class Web3LedgerClient(LedgerClient):
    """Ledger client for Uniswap V3 style position managers"""

    def __init__(self, config: Config = None, read_only: bool = False, w3: Optional[Web3] = None):
        """
        Initialize the web3 ledger client

        Args:
            config: Configuration object
            read_only: Skip account setup; mutating calls will fail
            w3: Pre-built Web3 instance, mainly for tests
        """
        self.config = config or Config()
        self.w3 = w3 or Web3(Web3.HTTPProvider(self.config.ETHEREUM_RPC_URL))

        if not read_only and self.config.PRIVATE_KEY:
            self.account = Account.from_key(self.config.PRIVATE_KEY)
            self.wallet_address = self.account.address
        else:
            self.account = None
            self.wallet_address = self.config.WALLET_ADDRESS

        self.token_decimals_cache: Dict[str, int] = {}

        self.position_manager = self.w3.eth.contract(
            address=Web3.to_checksum_address(self.config.UNISWAP_V3_POSITION_MANAGER),
            abi=POSITION_MANAGER_ABI
        )
        self.factory = self.w3.eth.contract(
            address=Web3.to_checksum_address(self.config.UNISWAP_V3_FACTORY),
            abi=FACTORY_ABI
        )

        chain_info = self.config.get_chain_info()
        logger.info(f"Ledger client for {chain_info['chain_name']} (Chain ID: {chain_info['chain_id']})")
        if self.wallet_address:
            logger.info(f"Wallet: {self.wallet_address}")

    # ---- blocking helpers, run in a worker thread ----

    def _token_decimals(self, token_address: str) -> int:
        key = token_address.lower()
        if key in self.token_decimals_cache:
            return self.token_decimals_cache[key]
        token = self.w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI)
        decimals = token.functions.decimals().call()
        self.token_decimals_cache[key] = decimals
        logger.debug(f"Fetched decimals for token {token_address}: {decimals}")
        return decimals

    def _to_raw(self, amount: Any, token_address: str) -> int:
        return int(Decimal(str(amount)) * (Decimal(10) ** self._token_decimals(token_address)))

    def _from_raw(self, raw: int, token_address: str) -> Decimal:
        return Decimal(raw) / (Decimal(10) ** self._token_decimals(token_address))

    def _tick_offset(self, token0: str, token1: str) -> int:
        """On-chain tick minus decimals-adjusted tick for a pair"""
        shift = self._token_decimals(token1) - self._token_decimals(token0)
        return int(round(shift * math.log(10) / math.log(1.0001)))

    def _liquidity_scale(self, token0: str, token1: str) -> Decimal:
        with localcontext() as ctx:
            ctx.prec = LIQUIDITY_PRECISION
            return (Decimal(10) ** (self._token_decimals(token0) + self._token_decimals(token1))).sqrt()

    def _liquidity_from_raw(self, raw: int, token0: str, token1: str) -> Decimal:
        with localcontext() as ctx:
            ctx.prec = LIQUIDITY_PRECISION
            return Decimal(raw) / self._liquidity_scale(token0, token1)

    def _liquidity_to_raw(self, liquidity: Any, token0: str, token1: str) -> int:
        with localcontext() as ctx:
            ctx.prec = LIQUIDITY_PRECISION
            return int((Decimal(str(liquidity)) * self._liquidity_scale(token0, token1)).to_integral_value())

    def _deadline(self) -> int:
        return int(self.w3.eth.get_block('latest')['timestamp']) + self.config.TRANSACTION_DEADLINE_SECONDS

    def _send(self, contract_function) -> Any:
        """Build, sign and send a transaction; wait for the receipt"""
        if self.account is None:
            raise PermissionError("Ledger client is read-only: no account configured")

        transaction = contract_function.build_transaction({
            'from': self.wallet_address,
            'nonce': self.w3.eth.get_transaction_count(self.wallet_address),
            'value': 0
        })
        transaction['gas'] = min(self.w3.eth.estimate_gas(transaction), self.config.MAX_GAS_LIMIT)

        signed_txn = self.account.sign_transaction(transaction)
        tx_hash = self.w3.eth.send_raw_transaction(signed_txn.raw_transaction)
        logger.info(f"Transaction sent: {tx_hash.hex()}")

        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash)
        if receipt.status != 1:
            raise RuntimeError(f"Transaction reverted: {tx_hash.hex()}")
        return receipt

    def _mint(self, params: Dict[str, Any]) -> Dict[str, Any]:
        token0, token1 = params['token0'], params['token1']
        offset = self._tick_offset(token0, token1)
        spacing = TickMath.tick_spacing(params['fee'])
        tick_lower = TickMath.nearest_usable_tick(params['tick_lower'] + offset, spacing)
        tick_upper = TickMath.nearest_usable_tick(params['tick_upper'] + offset, spacing)
        if tick_lower == tick_upper:
            tick_upper += spacing

        mint_params = (
            Web3.to_checksum_address(token0),
            Web3.to_checksum_address(token1),
            params['fee'],
            tick_lower,
            tick_upper,
            self._to_raw(params['amount0_desired'], token0),
            self._to_raw(params['amount1_desired'], token1),
            self._to_raw(params['amount0_min'], token0),
            self._to_raw(params['amount1_min'], token1),
            self.wallet_address,
            self._deadline()
        )
        logger.info(f"Minting position {token0}/{token1} fee={params['fee']} ticks=[{tick_lower}, {tick_upper}]")
        receipt = self._send(self.position_manager.functions.mint(mint_params))

        events = self.position_manager.events.IncreaseLiquidity().process_receipt(receipt)
        if not events:
            raise RuntimeError("Mint receipt carried no IncreaseLiquidity event")
        args = events[0]['args']
        return {
            'token_id': str(args['tokenId']),
            'tick_lower': tick_lower - offset,
            'tick_upper': tick_upper - offset,
            'liquidity': self._liquidity_from_raw(args['liquidity'], token0, token1),
            'amount0': self._from_raw(args['amount0'], token0),
            'amount1': self._from_raw(args['amount1'], token1),
        }

    def _decrease_and_withdraw(self, params: Dict[str, Any]) -> Dict[str, Any]:
        token_id = int(params['token_id'])
        token0, token1 = params['token0'], params['token1']
        decrease_params = (
            token_id,
            self._liquidity_to_raw(params['liquidity'], token0, token1),
            self._to_raw(params['amount0_min'], token0),
            self._to_raw(params['amount1_min'], token1),
            self._deadline()
        )
        logger.info(f"Removing {params['liquidity']} liquidity from token {token_id}")
        receipt = self._send(self.position_manager.functions.decreaseLiquidity(decrease_params))
        events = self.position_manager.events.DecreaseLiquidity().process_receipt(receipt)
        if not events:
            raise RuntimeError("Decrease receipt carried no DecreaseLiquidity event")
        raw0, raw1 = events[0]['args']['amount0'], events[0]['args']['amount1']

        # decreaseLiquidity only credits tokensOwed; collect the principal out
        self._send(self.position_manager.functions.collect((token_id, self.wallet_address, raw0, raw1)))
        return {
            'amount0': self._from_raw(raw0, token0),
            'amount1': self._from_raw(raw1, token1),
        }

    def _collect(self, params: Dict[str, Any]) -> Dict[str, Any]:
        token_id = int(params['token_id'])
        token0, token1 = params['token0'], params['token1']
        amount0_max = MAX_UINT128 if params.get('amount0_max') is None else self._to_raw(params['amount0_max'], token0)
        amount1_max = MAX_UINT128 if params.get('amount1_max') is None else self._to_raw(params['amount1_max'], token1)

        receipt = self._send(self.position_manager.functions.collect(
            (token_id, self.wallet_address, amount0_max, amount1_max)
        ))
        events = self.position_manager.events.Collect().process_receipt(receipt)
        if not events:
            return {'amount0': Decimal(0), 'amount1': Decimal(0)}
        return {
            'amount0': self._from_raw(events[0]['args']['amount0'], token0),
            'amount1': self._from_raw(events[0]['args']['amount1'], token1),
        }

    def _positions_page(self, owner: str, page: int, page_size: int) -> List[Dict[str, Any]]:
        owner = Web3.to_checksum_address(owner)
        balance = self.position_manager.functions.balanceOf(owner).call()
        start = (page - 1) * page_size
        positions = []
        for index in range(start, min(start + page_size, balance)):
            token_id = self.position_manager.functions.tokenOfOwnerByIndex(owner, index).call()
            info = self.position_manager.functions.positions(token_id).call()
            token0, token1 = info[2], info[3]
            offset = self._tick_offset(token0, token1)
            positions.append({
                'position_id': str(token_id),
                'token_id': str(token_id),
                'token0': token0,
                'token1': token1,
                'fee': info[4],
                'tick_lower': info[5] - offset,
                'tick_upper': info[6] - offset,
                'liquidity': self._liquidity_from_raw(info[7], token0, token1),
                'tokens_owed0': self._from_raw(info[10], token0),
                'tokens_owed1': self._from_raw(info[11], token1),
            })
        return positions

    def _pool_data(self, token0: str, token1: str, fee: int) -> Dict[str, Any]:
        pool_address = self.factory.functions.getPool(
            Web3.to_checksum_address(token0), Web3.to_checksum_address(token1), fee
        ).call()
        if pool_address == ZERO_ADDRESS:
            raise ValueError(f"No pool found for tokens {token0}/{token1} with fee {fee}")

        pool = self.w3.eth.contract(address=pool_address, abi=POOL_ABI)
        slot0 = pool.functions.slot0().call()
        return {
            'pool_address': pool_address,
            'sqrt_price_x96': slot0[0],
            'tick': slot0[1],
            'liquidity': pool.functions.liquidity().call(),
        }

    def _spot_price(self, token0: str, token1: str, sqrt_price_x96: Any) -> Decimal:
        return TickMath.sqrt_price_x96_to_price(
            sqrt_price_x96, self._token_decimals(token0), self._token_decimals(token1)
        )

    # ---- LedgerClient ----

    async def add_liquidity(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._mint, params)

    async def remove_liquidity(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._decrease_and_withdraw, params)

    async def collect_fees(self, params: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self._collect, params)

    async def get_user_positions(self, owner: str, page: int, page_size: int) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._positions_page, owner, page, page_size)

    async def get_pool_data(self, token0: str, token1: str, fee: int) -> Dict[str, Any]:
        return await asyncio.to_thread(self._pool_data, token0, token1, fee)

    async def calculate_spot_price(self, token0: str, token1: str, sqrt_price_x96: Any) -> Decimal:
        return await asyncio.to_thread(self._spot_price, token0, token1, sqrt_price_x96)


def _fn(name, inputs, outputs, mutability="view"):
    return {
        "inputs": [{"internalType": t, "name": n, "type": t} for n, t in inputs],
        "name": name,
        "outputs": [{"internalType": t, "name": n, "type": t} for n, t in outputs],
        "stateMutability": mutability,
        "type": "function"
    }


def _tuple_fn(name, components, outputs):
    return {
        "inputs": [{
            "components": [{"internalType": t, "name": n, "type": t} for n, t in components],
            "internalType": "struct",
            "name": "params",
            "type": "tuple"
        }],
        "name": name,
        "outputs": [{"internalType": t, "name": n, "type": t} for n, t in outputs],
        "stateMutability": "payable",
        "type": "function"
    }


def _event(name, fields):
    return {
        "anonymous": False,
        "inputs": [{"indexed": indexed, "internalType": t, "name": n, "type": t} for n, t, indexed in fields],
        "name": name,
        "type": "event"
    }


POSITION_MANAGER_ABI = [
    _tuple_fn("mint", [
        ("token0", "address"), ("token1", "address"), ("fee", "uint24"),
        ("tickLower", "int24"), ("tickUpper", "int24"),
        ("amount0Desired", "uint256"), ("amount1Desired", "uint256"),
        ("amount0Min", "uint256"), ("amount1Min", "uint256"),
        ("recipient", "address"), ("deadline", "uint256"),
    ], [("tokenId", "uint256"), ("liquidity", "uint128"), ("amount0", "uint256"), ("amount1", "uint256")]),
    _tuple_fn("decreaseLiquidity", [
        ("tokenId", "uint256"), ("liquidity", "uint128"),
        ("amount0Min", "uint256"), ("amount1Min", "uint256"), ("deadline", "uint256"),
    ], [("amount0", "uint256"), ("amount1", "uint256")]),
    _tuple_fn("collect", [
        ("tokenId", "uint256"), ("recipient", "address"),
        ("amount0Max", "uint128"), ("amount1Max", "uint128"),
    ], [("amount0", "uint256"), ("amount1", "uint256")]),
    _fn("positions", [("tokenId", "uint256")], [
        ("nonce", "uint96"), ("operator", "address"), ("token0", "address"), ("token1", "address"),
        ("fee", "uint24"), ("tickLower", "int24"), ("tickUpper", "int24"), ("liquidity", "uint128"),
        ("feeGrowthInside0LastX128", "uint256"), ("feeGrowthInside1LastX128", "uint256"),
        ("tokensOwed0", "uint128"), ("tokensOwed1", "uint128"),
    ]),
    _fn("balanceOf", [("owner", "address")], [("", "uint256")]),
    _fn("tokenOfOwnerByIndex", [("owner", "address"), ("index", "uint256")], [("", "uint256")]),
    _event("IncreaseLiquidity", [
        ("tokenId", "uint256", True), ("liquidity", "uint128", False),
        ("amount0", "uint256", False), ("amount1", "uint256", False),
    ]),
    _event("DecreaseLiquidity", [
        ("tokenId", "uint256", True), ("liquidity", "uint128", False),
        ("amount0", "uint256", False), ("amount1", "uint256", False),
    ]),
    _event("Collect", [
        ("tokenId", "uint256", True), ("recipient", "address", False),
        ("amount0", "uint256", False), ("amount1", "uint256", False),
    ]),
]

FACTORY_ABI = [
    _fn("getPool", [("tokenA", "address"), ("tokenB", "address"), ("fee", "uint24")], [("pool", "address")]),
]

POOL_ABI = [
    _fn("slot0", [], [
        ("sqrtPriceX96", "uint160"), ("tick", "int24"), ("observationIndex", "uint16"),
        ("observationCardinality", "uint16"), ("observationCardinalityNext", "uint16"),
        ("feeProtocol", "uint8"), ("unlocked", "bool"),
    ]),
    _fn("liquidity", [], [("", "uint128")]),
]

ERC20_ABI = [
    _fn("decimals", [], [("", "uint8")]),
    _fn("symbol", [], [("", "string")]),
]
