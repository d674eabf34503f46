"""Minimal ABI fragments for the token, the escrow and the collector."""

ERC20_ABI = [
    {"name": "approve", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "spender", "type": "address"}, {"name": "amount", "type": "uint256"}],
     "outputs": [{"type": "bool"}]},
    {"name": "allowance", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "owner", "type": "address"}, {"name": "spender", "type": "address"}],
     "outputs": [{"type": "uint256"}]},
    {"name": "balanceOf", "type": "function", "stateMutability": "view",
     "inputs": [{"name": "account", "type": "address"}],
     "outputs": [{"type": "uint256"}]},
]

PAYMENTS_ESCROW_ABI = [
    {"name": "deposit", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "collector", "type": "address"}, {"name": "receiver", "type": "address"},
                {"name": "tokens", "type": "uint256"}],
     "outputs": []},
    {"name": "multicall", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "data", "type": "bytes[]"}],
     "outputs": [{"name": "results", "type": "bytes[]"}]},
]

GRAPH_TALLY_COLLECTOR_ABI = [
    {"name": "authorizeSigner", "type": "function", "stateMutability": "nonpayable",
     "inputs": [{"name": "signer", "type": "address"}, {"name": "proofDeadline", "type": "uint256"},
                {"name": "proof", "type": "bytes"}],
     "outputs": []},
    {"name": "AuthorizableInvalidSignerProof", "type": "error", "inputs": []},
    {"name": "AuthorizableInvalidSignerProofDeadline", "type": "error",
     "inputs": [{"name": "proofDeadline", "type": "uint256"}, {"name": "currentTimestamp", "type": "uint256"}]},
    {"name": "AuthorizableSignerAlreadyAuthorized", "type": "error",
     "inputs": [{"name": "authorizer", "type": "address"}, {"name": "signer", "type": "address"},
                {"name": "revoked", "type": "bool"}]},
]
