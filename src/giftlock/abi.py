"""Minimal ABI for the time-lock gift contract.

Only the entries the service calls or listens to are listed.
"""


def _address(name: str, indexed: bool = False) -> dict:
    return {"indexed": indexed, "internalType": "address", "name": name, "type": "address"}


def _uint(name: str, indexed: bool = False) -> dict:
    return {"indexed": indexed, "internalType": "uint256", "name": name, "type": "uint256"}


GIFT_CONTRACT_ABI = [
    {
        "type": "function",
        "name": "lockFunds",
        "stateMutability": "payable",
        "inputs": [
            {"internalType": "address", "name": "tokenAddress", "type": "address"},
            {"internalType": "uint256", "name": "giftAmount", "type": "uint256"},
            {"internalType": "address", "name": "recipientWallet", "type": "address"},
            {"internalType": "uint256", "name": "unlockTimestamp", "type": "uint256"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "transferFunds",
        "stateMutability": "nonpayable",
        "inputs": [{"internalType": "address", "name": "recipientWallet", "type": "address"}],
        "outputs": [],
    },
    {
        "type": "event",
        "name": "FundsLocked",
        "anonymous": False,
        "inputs": [
            _address("paymentWallet", indexed=True),
            _address("tokenAddress", indexed=True),
            _uint("giftAmount"),
            _address("recipientWallet"),
            _uint("unlockTimestamp"),
        ],
    },
    {
        "type": "event",
        "name": "FundsTransferred",
        "anonymous": False,
        "inputs": [
            _address("paymentWallet", indexed=True),
            _address("tokenAddress", indexed=True),
            _uint("amount"),
            _address("recipientWallet", indexed=True),
        ],
    },
    {
        "type": "event",
        "name": "FundsSentToCharity",
        "anonymous": False,
        "inputs": [
            _address("sender", indexed=True),
            _address("tokenAddress", indexed=True),
            _uint("amount"),
            {"indexed": False, "internalType": "string", "name": "reason", "type": "string"},
        ],
    },
]

WATCHED_EVENTS = ("FundsLocked", "FundsTransferred")
