"""Configuration constants for chaindeploy."""

# Etherscan v2 unified API, selected per chain with the ``chainid`` query parameter
ETHERSCAN_V2_API_URL = "https://api.etherscan.io/v2/api"

# Network configuration based on ethereum-lists/chains
# EIP-3770 chain short names for environment variables
NETWORK_CONFIG = {
    "mainnet": {
        "chain_id": 1,
        "chain_name": "Ethereum Mainnet",
        "short_name": "eth",  # EIP-3770
        "block_explorer_url": "https://etherscan.io",
        "explorer_api_url": ETHERSCAN_V2_API_URL,
    },
    "sepolia": {
        "chain_id": 11155111,
        "chain_name": "Sepolia",
        "short_name": "sep",  # EIP-3770
        "block_explorer_url": "https://sepolia.etherscan.io",
        "explorer_api_url": ETHERSCAN_V2_API_URL,
    },
    "holesky": {
        "chain_id": 17000,
        "chain_name": "Holesky",
        "short_name": "holesky",  # EIP-3770
        "block_explorer_url": "https://holesky.etherscan.io",
        "explorer_api_url": ETHERSCAN_V2_API_URL,
    },
    "goerli": {
        "chain_id": 5,
        "chain_name": "Goerli",
        "short_name": "gor",  # EIP-3770
        "block_explorer_url": "https://goerli.etherscan.io",
        "explorer_api_url": ETHERSCAN_V2_API_URL,
    },
    "gnosis": {
        "chain_id": 100,
        "chain_name": "Gnosis Chain",
        "short_name": "gno",  # EIP-3770
        "block_explorer_url": "https://gnosisscan.io",
        "explorer_api_url": ETHERSCAN_V2_API_URL,
    },
    "localhost": {
        "chain_id": 31337,
        "chain_name": "Hardhat / Anvil",
        "short_name": "localhost",
        "default_rpc_url": "http://127.0.0.1:8545",
    },
}

# Fallback signing key variable when no per-network key is set
DEFAULT_KEY_ENV = "PRIVATE_KEY"
EXPLORER_API_KEY_ENV = "ETHERSCAN_API_KEY"

DEFAULT_SOLC_VERSION = "0.8.24"
DEFAULT_OPTIMIZER_RUNS = 200

# Receipt polling: start at 1s, double, never wait more than 15s between polls
RECEIPT_POLL_INITIAL = 1.0
RECEIPT_POLL_FACTOR = 2.0
RECEIPT_POLL_CAP = 15.0
DEFAULT_RECEIPT_TIMEOUT = 300.0

DEFAULT_VERIFY_INTERVAL = 5.0
DEFAULT_VERIFY_MAX_ATTEMPTS = 24

# Headroom added on top of eth_estimateGas
GAS_LIMIT_MULTIPLIER = 1.2

RPC_TIMEOUT = 30
RPC_MAX_RETRIES = 3
