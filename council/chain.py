"""Read-only access to the on-chain proposal registry through web3.py."""
from __future__ import annotations

import logging
import os
from decimal import Decimal
from typing import Any

from eth_utils import to_checksum_address
from web3 import AsyncWeb3, Web3

log = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://rpc.testnet.citrea.xyz"
DEFAULT_REGISTRY_ADDRESS = "0x3c8CF76cA8125CfD6D01C2DAB0CE04655Cc33f26"
DEFAULT_AMOUNT_DECIMALS = 8

PROPOSAL_SUBMITTED_SIGNATURE = "ProposalSubmitted(uint256,address,string,uint256)"

PROPOSAL_REGISTRY_ABI: list[dict[str, Any]] = [
    {
        "type": "function", "name": "getProposal", "stateMutability": "view",
        "inputs": [{"name": "proposalId", "type": "uint256"}],
        "outputs": [{
            "name": "", "type": "tuple",
            "components": [
                {"name": "id", "type": "uint256"},
                {"name": "title", "type": "string"},
                {"name": "description", "type": "string"},
                {"name": "amount", "type": "uint256"},
                {"name": "submitter", "type": "address"},
                {"name": "recipient", "type": "string"},
                {"name": "timestamp", "type": "uint256"},
                {"name": "status", "type": "uint8"},
            ],
        }],
    },
    {
        "type": "function", "name": "getProposalCount", "stateMutability": "view",
        "inputs": [], "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "event", "name": "ProposalSubmitted", "anonymous": False,
        "inputs": [
            {"name": "proposalId", "type": "uint256", "indexed": True},
            {"name": "submitter", "type": "address", "indexed": True},
            {"name": "title", "type": "string", "indexed": False},
            {"name": "amount", "type": "uint256", "indexed": False},
        ],
    },
]


def scale_amount(raw: int, decimals: int) -> float:
    """Convert an integer token amount to whole units."""
    return float(Decimal(raw) / (Decimal(10) ** decimals))


def proposal_from_struct(struct: tuple | list, decimals: int = DEFAULT_AMOUNT_DECIMALS) -> dict[str, Any]:
    """Map the ``getProposal`` tuple onto the fields ``submit_proposal`` takes."""
    pid, title, description, amount, submitter, recipient, _timestamp, _status = struct
    return {
        "id": int(pid),
        "title": str(title),
        "description": str(description),
        "amount": scale_amount(int(amount), decimals),
        "submitter": str(submitter),
        "recipient": str(recipient) or None,
    }


class ProposalRegistry:
    """The three registry reads the chain watcher needs."""

    def __init__(
        self,
        rpc_url: str | None = None,
        address: str | None = None,
        decimals: int | None = None,
    ):
        self.rpc_url = rpc_url or os.environ.get("COUNCIL_RPC_URL", DEFAULT_RPC_URL)
        self.address = to_checksum_address(
            address or os.environ.get("COUNCIL_REGISTRY_ADDRESS", DEFAULT_REGISTRY_ADDRESS)
        )
        self.decimals = decimals if decimals is not None else int(
            os.environ.get("COUNCIL_AMOUNT_DECIMALS", DEFAULT_AMOUNT_DECIMALS)
        )
        self._w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(self.rpc_url))
        self._contract = self._w3.eth.contract(address=self.address, abi=PROPOSAL_REGISTRY_ABI)
        self._topic = Web3.keccak(text=PROPOSAL_SUBMITTED_SIGNATURE)

    async def block_number(self) -> int:
        return int(await self._w3.eth.block_number)

    async def proposal_count(self) -> int:
        return int(await self._contract.functions.getProposalCount().call())

    async def submitted_ids(self, from_block: int, to_block: int) -> list[int]:
        """Proposal ids from ``ProposalSubmitted`` logs in the block range, ascending."""
        logs = await self._w3.eth.get_logs({
            "address": self.address,
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [self._topic],
        })
        ids = {int.from_bytes(bytes(entry["topics"][1]), "big") for entry in logs if len(entry["topics"]) > 1}
        return sorted(ids)

    async def get_proposal(self, proposal_id: int) -> dict[str, Any]:
        struct = await self._contract.functions.getProposal(proposal_id).call()
        return proposal_from_struct(struct, self.decimals)
