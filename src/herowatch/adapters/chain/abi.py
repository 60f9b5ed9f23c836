from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Tuple

from eth_abi import decode as abi_decode
from web3 import Web3

from ...domain.events.chain import DecodedLog


@dataclass(frozen=True)
class EventInput:
    name: str
    type: str
    indexed: bool = False


@dataclass(frozen=True)
class EventSpec:
    """Solidity event definition: signature, topic0 and decoder."""

    name: str
    inputs: Tuple[EventInput, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(i.type for i in self.inputs)})"

    @property
    def topic(self) -> str:
        return Web3.to_hex(Web3.keccak(text=self.signature))

    def decode_args(self, topics: List[str], data: str) -> Dict[str, Any]:
        indexed = [i for i in self.inputs if i.indexed]
        plain = [i for i in self.inputs if not i.indexed]
        if len(topics) < 1 + len(indexed):
            raise ValueError(f"{self.name}: expected {1 + len(indexed)} topics, got {len(topics)}")

        args: Dict[str, Any] = {}
        for inp, raw_topic in zip(indexed, topics[1:]):
            (args[inp.name],) = abi_decode([inp.type], Web3.to_bytes(hexstr=raw_topic))

        raw_data = Web3.to_bytes(hexstr=data) if data and data != "0x" else b""
        if plain:
            values = abi_decode([i.type for i in plain], raw_data)
            for inp, value in zip(plain, values):
                args[inp.name] = value

        for inp in self.inputs:
            if inp.type == "address":
                args[inp.name] = Web3.to_checksum_address(args[inp.name])
        return args


STAKED_EVENT = EventSpec(
    name="Staked",
    inputs=(
        EventInput("owner", "address"),
        EventInput("tokenId", "uint256"),
        EventInput("timestamp", "uint256"),
    ),
)

DEATH_EVENT = EventSpec(name="Death", inputs=(EventInput("id", "uint256"),))


def _as_int(value: Any) -> Any:
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return value


def decode_log(raw: Mapping[str, Any], spec: EventSpec) -> DecodedLog:
    """
    Build a DecodedLog from an eth_subscription / eth_getLogs entry.

    Raises ValueError when the log does not belong to `spec` or its payload
    cannot be ABI-decoded.
    """
    topics = [str(t) for t in raw.get("topics") or []]
    if not topics or topics[0].lower() != spec.topic.lower():
        raise ValueError(f"log is not a {spec.name} event (topic0={topics[0] if topics else None})")

    data = raw.get("data") or "0x"
    try:
        args = spec.decode_args(topics, data)
    except Exception as exc:
        raise ValueError(f"cannot decode {spec.name} log: {exc}") from exc

    return DecodedLog(
        address=str(raw.get("address", "")),
        topics=topics,
        data=data,
        block_number=_as_int(raw.get("blockNumber")),
        event=spec.name,
        args=args,
        transaction_hash=raw.get("transactionHash"),
        log_index=_as_int(raw.get("logIndex")),
        removed=bool(raw.get("removed", False)),
    )
