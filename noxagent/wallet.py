"""
Generate a fresh EVM wallet to receive x402 payments.

The private key and mnemonic are printed once; store them offline and set
NOX_EVM_WALLET to the address.
"""

from dataclasses import dataclass

from eth_account import Account

Account.enable_unaudited_hdwallet_features()

ETH_DERIVATION_PATH = "m/44'/60'/0'/0/0"


@dataclass
class NewWallet:
    address: str
    private_key: str
    mnemonic: str
    derivation_path: str = ETH_DERIVATION_PATH


def create_wallet(num_words: int = 12) -> NewWallet:
    if num_words not in (12, 24):
        raise ValueError("num_words must be 12 or 24")
    account, mnemonic = Account.create_with_mnemonic(
        num_words=num_words, account_path=ETH_DERIVATION_PATH)
    key_hex = account.key.hex()
    if not key_hex.startswith("0x"):
        key_hex = "0x" + key_hex
    return NewWallet(address=account.address, private_key=key_hex, mnemonic=mnemonic)


def address_from_mnemonic(mnemonic: str) -> str:
    return Account.from_mnemonic(mnemonic, account_path=ETH_DERIVATION_PATH).address
