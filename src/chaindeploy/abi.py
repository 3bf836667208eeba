"""ABI encoding, decoding and argument coercion."""

import json
import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

from eth_abi import decode, encode
from eth_abi.exceptions import DecodingError
from eth_abi.exceptions import EncodingError as AbiEncodingError
from eth_utils import decode_hex, is_address, keccak, to_checksum_address

from .exceptions import EncodingError
from .types import ArtifactRef

# Error(string) and Panic(uint256) selectors
ERROR_SELECTOR = bytes.fromhex("08c379a0")
PANIC_SELECTOR = bytes.fromhex("4e487b71")

_REVERT_PREFIX = "execution reverted"
_ARRAY_SUFFIX = re.compile(r"\[\d*\]$")


def canonical_type(param: Dict[str, Any]) -> str:
    """Canonical ABI type of a parameter, expanding tuples into ``(a,b)`` form."""
    abi_type = param["type"]
    if not abi_type.startswith("tuple"):
        return abi_type
    inner = ",".join(canonical_type(c) for c in param.get("components", []))
    return f"({inner}){abi_type[len('tuple'):]}"


def input_types(entry: Optional[Dict[str, Any]]) -> List[str]:
    if entry is None:
        return []
    return [canonical_type(p) for p in entry.get("inputs", [])]


def output_types(entry: Dict[str, Any]) -> List[str]:
    return [canonical_type(p) for p in entry.get("outputs", [])]


def function_signature(entry: Dict[str, Any]) -> str:
    return f"{entry['name']}({','.join(input_types(entry))})"


def function_selector(entry: Dict[str, Any]) -> bytes:
    return keccak(text=function_signature(entry))[:4]


def encode_arguments(entry: Optional[Dict[str, Any]], args: Sequence[Any]) -> bytes:
    """
    ABI-encode arguments for a constructor or function entry.

    Raises:
        EncodingError: On arity or type mismatch
    """
    types = input_types(entry)
    if len(args) != len(types):
        name = (entry or {}).get("name", "constructor")
        raise EncodingError(f"{name} expects {len(types)} arguments, got {len(args)}")
    try:
        return encode(types, list(args))
    except (AbiEncodingError, TypeError, ValueError) as e:
        raise EncodingError(f"Cannot encode arguments as ({','.join(types)}): {e}") from e


def encode_deployment(artifact: ArtifactRef, args: Sequence[Any]) -> str:
    """Creation bytecode followed by encoded constructor arguments, 0x-prefixed."""
    bytecode = artifact.bytecode[2:] if artifact.bytecode.startswith("0x") else artifact.bytecode
    if not bytecode:
        raise EncodingError(
            f"{artifact.contract_name} has no creation bytecode (abstract contract or interface?)"
        )
    return "0x" + bytecode + encode_arguments(artifact.constructor_abi(), args).hex()


def encode_call(entry: Dict[str, Any], args: Sequence[Any]) -> str:
    return "0x" + (function_selector(entry) + encode_arguments(entry, args)).hex()


def decode_outputs(entry: Dict[str, Any], data: str) -> Tuple[Any, ...]:
    """Decode the return data of an ``eth_call`` against a function entry."""
    try:
        return tuple(decode(output_types(entry), decode_hex(data)))
    except (DecodingError, ValueError) as e:
        raise EncodingError(f"Cannot decode output of {entry.get('name')}: {e}") from e


def decode_revert_reason(data: Any, abi: Optional[List[Dict[str, Any]]] = None) -> Optional[str]:
    """
    Extract a human-readable revert reason from RPC error data.

    Understands Error(string), Panic(uint256), custom errors declared in
    ``abi``, nested ``{"data": ...}`` objects and geth's
    ``execution reverted: <reason>`` messages.

    Returns:
        The reason, or None if nothing decodable is present
    """
    if isinstance(data, dict):
        return decode_revert_reason(data.get("data"), abi) or _reason_from_message(
            data.get("message")
        )
    if not isinstance(data, str) or not data.startswith("0x"):
        return _reason_from_message(data)

    try:
        raw = decode_hex(data)
    except ValueError:
        return None
    selector, body = raw[:4], raw[4:]

    try:
        if selector == ERROR_SELECTOR:
            return decode(["string"], body)[0]
        if selector == PANIC_SELECTOR:
            return f"Panic(0x{decode(['uint256'], body)[0]:02x})"
        for item in abi or []:
            if item.get("type") == "error" and function_selector(item) == selector:
                values = decode(input_types(item), body)
                return f"{item['name']}({', '.join(repr(v) for v in values)})"
    except DecodingError:
        return None
    return None


def _reason_from_message(message: Any) -> Optional[str]:
    if not isinstance(message, str) or not message.startswith(_REVERT_PREFIX):
        return None
    reason = message[len(_REVERT_PREFIX):].lstrip(":").strip()
    return reason or None


def coerce_argument(abi_type: str, value: Any) -> Any:
    """
    Convert a command-line string into the Python value eth-abi expects.

    Non-string values are returned unchanged (except inside arrays).

    Raises:
        EncodingError: If the string cannot represent ``abi_type``
    """
    if _ARRAY_SUFFIX.search(abi_type):
        items = _load_json(abi_type, value) if isinstance(value, str) else value
        if not isinstance(items, list):
            raise EncodingError(f"Expected a JSON array for {abi_type}, got {value!r}")
        base = _ARRAY_SUFFIX.sub("", abi_type)
        return [coerce_argument(base, item) for item in items]

    if abi_type.startswith("("):
        return _load_json(abi_type, value) if isinstance(value, str) else value

    if not isinstance(value, str):
        return value

    try:
        if abi_type.startswith(("uint", "int")):
            return int(value, 0)
        if abi_type == "bool":
            lowered = value.lower()
            if lowered in ("true", "1", "yes"):
                return True
            if lowered in ("false", "0", "no"):
                return False
            raise ValueError(value)
        if abi_type == "address":
            if not is_address(value):
                raise ValueError(value)
            return to_checksum_address(value)
        if abi_type.startswith("bytes"):
            return decode_hex(value)
    except ValueError:
        raise EncodingError(f"Cannot interpret {value!r} as {abi_type}") from None

    return value


def _load_json(abi_type: str, value: str) -> Any:
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        raise EncodingError(f"Expected JSON for {abi_type}, got {value!r}") from None


def coerce_arguments(entry: Optional[Dict[str, Any]], args: Sequence[Any]) -> Tuple[Any, ...]:
    """Coerce each argument to the type of the matching ABI input."""
    types = input_types(entry)
    if len(args) != len(types):
        name = (entry or {}).get("name", "constructor")
        raise EncodingError(f"{name} expects {len(types)} arguments, got {len(args)}")
    return tuple(coerce_argument(t, a) for t, a in zip(types, args))
