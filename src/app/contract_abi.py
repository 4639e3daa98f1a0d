from __future__ import annotations

from typing import Any, Final

from commit_reveal import CommitScheme

# On-chain value of a move that has not been revealed yet.
MOVE_UNSET: Final[int] = 255


def _fn(name: str, inputs: list[tuple[str, str]], outputs: list[tuple[str, str]] | None = None, view: bool = False) -> dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in (outputs or [])],
        "stateMutability": "view" if view else "nonpayable",
    }


MATCH_COMPONENTS: Final[list[tuple[str, str]]] = [
    ("creator", "address"),
    ("opponent", "address"),
    ("wager", "uint256"),
    ("creatorCommitment", "bytes32"),
    ("opponentCommitment", "bytes32"),
    ("creatorMove", "uint8"),
    ("opponentMove", "uint8"),
    ("winner", "address"),
    ("resolved", "bool"),
]


def game_abi(scheme: CommitScheme) -> list[dict[str, Any]]:
    move_type = "string" if scheme is CommitScheme.PACKED_STRING else "uint8"
    return [
        _fn("getPlayerBalance", [("player", "address")], [("", "uint256")], view=True),
        _fn("getMatch", [("matchId", "uint256")], MATCH_COMPONENTS, view=True),
        _fn("matchIdToWinner", [("matchId", "uint256")], [("", "address")], view=True),
        _fn(
            "depositWithPermit",
            [("amount", "uint256"), ("deadline", "uint256"), ("v", "uint8"), ("r", "bytes32"), ("s", "bytes32")],
        ),
        _fn("withdraw", [("amount", "uint256")]),
        _fn("createMatch", [("wager", "uint256"), ("commitment", "bytes32")], [("", "uint256")]),
        _fn("joinMatch", [("matchId", "uint256"), ("commitment", "bytes32")]),
        _fn("revealMove", [("matchId", "uint256"), ("move", move_type), ("salt", "string")]),
        _fn("resolveMatch", [("matchId", "uint256")]),
        {
            "type": "event",
            "name": "MatchCreated",
            "anonymous": False,
            "inputs": [
                {"name": "matchId", "type": "uint256", "indexed": True},
                {"name": "creator", "type": "address", "indexed": True},
                {"name": "wager", "type": "uint256", "indexed": False},
            ],
        },
    ]


ASSET_ABI: Final[list[dict[str, Any]]] = [
    _fn("nonces", [("owner", "address")], [("", "uint256")], view=True),
]
