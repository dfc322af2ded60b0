"""
Common hash and address utility functions
"""

from typing import Union

from eth_typing import HexStr
from eth_utils import add_0x_prefix, remove_0x_prefix
from web3 import Web3

ZERO_HASH = "0x" + "0" * 64


def bytes_to_hex_str_auto(byte_arr: Union[bytes, str]) -> str:
    """
    Convert a byte array to a hex string
    with intelligent conversion of bytes and string representations.
    Some APIs may return byte array as bytes, HexBytes, or a string,
    depending on the nodes, paths, and library versions they use.

    :param byte_arr: The byte array to convert.
    :return: The resulting lowercase 0x-prefixed hex string.
    """
    if isinstance(byte_arr, bytes):
        hex_str = byte_arr.hex()
    else:
        hex_str = str(byte_arr)
    return add_0x_prefix(HexStr(remove_0x_prefix(HexStr(hex_str)))).lower()


def hex_str_to_bytes(hex_str: str) -> bytes:
    """
    Convert a hex string to a byte array.

    :param hex_str: The hex string to convert.
    :return: The resulting byte array.
    """
    return bytes.fromhex(remove_0x_prefix(HexStr(hex_str)))


def is_zero_hash(value: Union[bytes, str, None]) -> bool:
    """
    Check whether a bytes32 value is empty.
    Registry lookups return the zero hash for "no value".

    :param value: The value to check.
    :return: True if the value is None or all zeros.
    """
    if value is None:
        return True
    return int(remove_0x_prefix(HexStr(bytes_to_hex_str_auto(value))) or "0", 16) == 0


def event_signature_topic(signature: str) -> str:
    """
    Compute topic0 for an event signature.

    :param signature: Canonical signature, e.g. "DataSchemaRegistered(bytes32)".
    :return: The keccak256 hash as a 0x-prefixed hex string.
    """
    return bytes_to_hex_str_auto(Web3.keccak(text=signature))


def normalize_address(address: str) -> str:
    """
    Normalize an address for storage and comparison.

    :param address: The address in any case.
    :return: The lowercase address.
    """
    return str(address).lower()


def to_checksum_address(address: str) -> str:
    """
    Convert an address to the checksum form that Web3 requires for calls.

    :param address: The address in any case.
    :return: The checksum address.
    """
    return Web3.to_checksum_address(address)
