"""
Contract Event Decoder — ABI-Driven Log Parsing

Turns a raw eth_subscription log record

    {"address": ..., "topics": [topic0, ...], "data": "0x...",
     "blockNumber": "0x...", "transactionHash": ..., "logIndex": "0x..."}

into a DecodedEvent. topic0 selects the event by its keccak-256 signature
hash; indexed arguments come from the remaining topics and non-indexed
arguments are ABI-decoded from data.

Indexed dynamic values (string, bytes, arrays, tuples) are stored on-chain
only as their hash, so they are returned as the raw 32-byte topic hex.
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from eth_abi import decode as abi_decode
from eth_utils import decode_hex, keccak, to_checksum_address

from utils.logger import get_logger

logger = get_logger("decoder.event_decoder")


class EventDecodeError(Exception):
    """Raised when a log matches an ABI event but cannot be decoded."""
    pass


@dataclass
class DecodedEvent:
    """Application-level representation of one contract log."""
    name: str
    signature: str
    args: Dict[str, Any] = field(default_factory=dict)
    address: Optional[str] = None
    block_number: Optional[int] = None
    transaction_hash: Optional[str] = None
    log_index: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "signature": self.signature,
            "args": self.args,
            "address": self.address,
            "block_number": self.block_number,
            "transaction_hash": self.transaction_hash,
            "log_index": self.log_index,
        }


def canonical_type(param: dict) -> str:
    """Canonical ABI type string, expanding tuples into (t1,t2,...)."""
    abi_type = param["type"]
    if abi_type.startswith("tuple"):
        inner = ",".join(canonical_type(c) for c in param.get("components", []))
        return f"({inner}){abi_type[len('tuple'):]}"
    return abi_type


def event_signature(event_abi: dict) -> str:
    """e.g. Transfer(address,address,uint256)"""
    types = ",".join(canonical_type(p) for p in event_abi.get("inputs", []))
    return f"{event_abi['name']}({types})"


def topic_hash(signature: str) -> str:
    return "0x" + keccak(text=signature).hex().removeprefix("0x")


def _is_dynamic(abi_type: str) -> bool:
    return (
        abi_type in ("string", "bytes")
        or abi_type.endswith("]")
        or abi_type.startswith("(")
    )


def _hex_to_int(value) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, int):
        return value
    return int(value, 16)


def _normalize(value, abi_type: str = ""):
    """Make decoded values JSON-friendly (bytes → hex, tuples → lists)."""
    if abi_type == "address" and isinstance(value, str):
        return to_checksum_address(value)
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, (list, tuple)):
        return [_normalize(v) for v in value]
    return value


class ContractEventDecoder:
    """
    Decodes logs for every event declared in a contract ABI.

    The decoder is callable so it can be passed straight to the listener
    as its decode capability.
    """

    def __init__(self, abi: List[dict], event_name: str):
        self._events: Dict[str, dict] = {}
        self._signatures: Dict[str, str] = {}

        for entry in abi:
            if entry.get("type") != "event" or entry.get("anonymous"):
                continue
            signature = event_signature(entry)
            topic = topic_hash(signature)
            self._events[topic] = entry
            self._signatures[topic] = signature

        matches = [t for t, e in self._events.items() if e["name"] == event_name]
        if not matches:
            raise ValueError(f"Event '{event_name}' not found in ABI")
        if len(matches) > 1:
            raise ValueError(f"Event '{event_name}' is overloaded in ABI; ambiguous")

        self._event_name = event_name
        self._topic_hash = matches[0]
        logger.info(
            f"DECODER_READY | event={event_name} | "
            f"signature={self._signatures[self._topic_hash]} | topic_hash={self._topic_hash}"
        )

    @classmethod
    def from_file(cls, path: Union[str, Path], event_name: str) -> "ContractEventDecoder":
        """Load an ABI JSON file (a bare list, or an object with an "abi" key)."""
        with open(path, "r", encoding="utf-8") as f:
            abi = json.load(f)
        if isinstance(abi, dict):
            abi = abi.get("abi", [])
        return cls(abi, event_name)

    @property
    def event_name(self) -> str:
        return self._event_name

    @property
    def topic_hash(self) -> str:
        """topic0 of the target event, used in the subscribe request."""
        return self._topic_hash

    def __call__(self, raw_log: dict) -> Optional[DecodedEvent]:
        return self.decode(raw_log)

    def decode(self, raw_log: dict) -> Optional[DecodedEvent]:
        """
        Decode one raw log.

        Returns None when topic0 is not an event in this ABI.
        Raises EventDecodeError when the log is structurally invalid.
        """
        if not isinstance(raw_log, dict):
            raise EventDecodeError(f"log must be an object, got {type(raw_log).__name__}")

        topics = raw_log.get("topics") or []
        if not topics:
            return None

        event_abi = self._events.get(str(topics[0]).lower())
        if event_abi is None:
            return None

        inputs = event_abi.get("inputs", [])
        indexed = [p for p in inputs if p.get("indexed")]
        non_indexed = [p for p in inputs if not p.get("indexed")]

        if len(topics) - 1 != len(indexed):
            raise EventDecodeError(
                f"{event_abi['name']}: expected {len(indexed)} indexed topics, "
                f"got {len(topics) - 1}"
            )

        try:
            values: Dict[str, Any] = {}

            for param, topic in zip(indexed, topics[1:]):
                abi_type = canonical_type(param)
                topic_bytes = decode_hex(topic)
                if _is_dynamic(abi_type):
                    values[param["name"]] = "0x" + topic_bytes.hex()
                else:
                    values[param["name"]] = _normalize(
                        abi_decode([abi_type], topic_bytes)[0], abi_type
                    )

            data = decode_hex(raw_log.get("data") or "0x")
            decoded = abi_decode([canonical_type(p) for p in non_indexed], data)
            for param, value in zip(non_indexed, decoded):
                values[param["name"]] = _normalize(value, canonical_type(param))
        except Exception as e:
            raise EventDecodeError(f"{event_abi['name']}: {e}") from e

        # Preserve ABI argument order
        args = {p["name"]: values[p["name"]] for p in inputs}

        address = raw_log.get("address")
        return DecodedEvent(
            name=event_abi["name"],
            signature=self._signatures[str(topics[0]).lower()],
            args=args,
            address=to_checksum_address(address) if address else None,
            block_number=_hex_to_int(raw_log.get("blockNumber")),
            transaction_hash=raw_log.get("transactionHash"),
            log_index=_hex_to_int(raw_log.get("logIndex")),
        )
