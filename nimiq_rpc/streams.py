"""Block and log subscriptions.

Head-block subscriptions are narrowed client-side to micro, macro or
election blocks. The three block filters are mutually exclusive: every block
is classified exactly once by :func:`block_type`.
"""
from dataclasses import replace
from enum import Enum
from typing import Any, Callable, List, Optional

from .config import StreamOptions
from .subscriptions import Subscription, SubscriptionManager


class BlockSubscriptionType(str, Enum):
    MICRO = "micro"
    MACRO = "macro"
    ELECTION = "election"


class RetrieveType(str, Enum):
    FULL = "full"
    PARTIAL = "partial"


def block_type(block: Any) -> BlockSubscriptionType:
    """Classify a block by its ``isElectionBlock`` field.

    Micro blocks do not carry the field (or carry null). Macro blocks carry
    it, and it is true only for election blocks. A macro block that lacks the
    field cannot be told apart from a micro block and is classified as micro.

    Raises:
        ValueError: If block is None
        TypeError: If block is not a mapping
    """
    if block is None:
        raise ValueError("Block is undefined")
    if not isinstance(block, dict):
        raise TypeError(f"Block must be a mapping, got {type(block).__name__}")

    is_election = block.get("isElectionBlock")
    if is_election is None:
        return BlockSubscriptionType.MICRO
    if is_election:
        return BlockSubscriptionType.ELECTION
    return BlockSubscriptionType.MACRO


def is_micro(block: Any) -> bool:
    return block_type(block) is BlockSubscriptionType.MICRO


def is_macro(block: Any) -> bool:
    return block_type(block) is BlockSubscriptionType.MACRO


def is_election(block: Any) -> bool:
    return block_type(block) is BlockSubscriptionType.ELECTION


def _narrowed(options: Optional[StreamOptions], block_filter: Callable[[Any], bool]) -> StreamOptions:
    options = options or StreamOptions()
    user_filter = options.filter
    if user_filter is None:
        return replace(options, filter=block_filter)
    return replace(options, filter=lambda block: block_filter(block) and user_filter(block))


class BlockchainStream:
    """Subscriptions to blockchain events."""

    def __init__(self, manager: SubscriptionManager):
        self.manager = manager

    async def subscribe_for_block_hashes(self, options: Optional[StreamOptions] = None) -> Subscription:
        """Subscribe to the hash of every new head block."""
        return await self.manager.subscribe("subscribeForHeadBlockHash", [], options)

    async def subscribe_for_blocks(
        self, retrieve: RetrieveType = RetrieveType.FULL, options: Optional[StreamOptions] = None
    ) -> Subscription:
        """Subscribe to every new head block."""
        return await self.manager.subscribe(
            "subscribeForHeadBlock", [retrieve is RetrieveType.FULL], options
        )

    async def subscribe_for_micro_blocks(
        self, retrieve: RetrieveType = RetrieveType.FULL, options: Optional[StreamOptions] = None
    ) -> Subscription:
        return await self.subscribe_for_blocks(retrieve, _narrowed(options, is_micro))

    async def subscribe_for_macro_blocks(
        self, retrieve: RetrieveType = RetrieveType.FULL, options: Optional[StreamOptions] = None
    ) -> Subscription:
        return await self.subscribe_for_blocks(retrieve, _narrowed(options, is_macro))

    async def subscribe_for_election_blocks(
        self, retrieve: RetrieveType = RetrieveType.FULL, options: Optional[StreamOptions] = None
    ) -> Subscription:
        return await self.subscribe_for_blocks(retrieve, _narrowed(options, is_election))

    async def subscribe_for_validator_election_by_address(
        self, address: str, options: Optional[StreamOptions] = None
    ) -> Subscription:
        """Subscribe to the pre-epoch election result of one validator."""
        return await self.manager.subscribe(
            "subscribeForValidatorElectionByAddress", [address], options
        )

    async def subscribe_for_logs_by_addresses_and_types(
        self,
        addresses: Optional[List[str]] = None,
        log_types: Optional[List[str]] = None,
        options: Optional[StreamOptions] = None,
    ) -> Subscription:
        """Subscribe to logs touching the given addresses, of the given types.

        Empty lists match every address and every log type.
        """
        return await self.manager.subscribe(
            "subscribeForLogsByAddressesAndTypes", [addresses or [], log_types or []], options
        )
