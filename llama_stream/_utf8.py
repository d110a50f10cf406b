class Utf8Reassembler:
    """Rebuilds text from token pieces that may split multi-byte characters.

    Byte-level tokenizers often emit half of a character (emojis, CJK) in one
    token and the rest in the next. `feed` returns the longest prefix of the
    pending bytes that decodes as UTF-8 and keeps the remainder for the next
    call; `flush` gives up on whatever is left once generation ends.
    """

    def __init__(self):
        self.pending = bytearray()

    def feed(self, data: bytes) -> str:
        self.pending += data
        try:
            text = self.pending.decode("utf-8")
        except UnicodeDecodeError as e:
            # Every prefix up to the first bad byte decodes, and every longer
            # prefix still contains that incomplete or invalid sequence.
            n_valid = e.start
        else:
            self.pending.clear()
            return text

        if n_valid == 0:
            return ""

        text = self.pending[:n_valid].decode("utf-8")
        del self.pending[:n_valid]
        return text

    def flush(self) -> str:
        """Best-effort decode of the leftover bytes, replacing anything invalid."""
        text = self.pending.decode("utf-8", errors="replace")
        self.pending.clear()
        return text

    def reset(self):
        self.pending.clear()

    def __len__(self) -> int:
        return len(self.pending)
