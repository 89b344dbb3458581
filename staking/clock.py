class BlockClock:
    """Manually driven block-number clock. Ticks never move backwards."""

    def __init__(self, start: int = 0):
        if start < 0:
            raise ValueError("Block number cannot be negative")
        self._block = start

    def __call__(self) -> int:
        return self._block

    def current(self) -> int:
        return self._block

    def advance(self, blocks: int = 1) -> int:
        if blocks < 0:
            raise ValueError("Cannot advance by a negative number of blocks")
        self._block += blocks
        return self._block

    def set(self, block: int) -> int:
        if block < self._block:
            raise ValueError(f"Block {block} is behind current block {self._block}")
        self._block = block
        return self._block
