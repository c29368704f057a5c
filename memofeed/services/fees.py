"""
Like/tip fee split.
"""

from typing import Tuple


def split_like_amount(total: int, fee_bps: int) -> Tuple[int, int]:
    """
    Split a gross like amount into (fee, creator share), in lamports.

    The fee is floor(total * fee_bps / 10000) with a floor of one lamport.
    """
    total = max(1, int(total))
    fee = max(1, (total * fee_bps) // 10_000)
    return fee, max(0, total - fee)
