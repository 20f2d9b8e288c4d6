class Prefix:
    """
    Fixed-length sliding window over the last words seen.

    The space-joined form of the window is the lookup key of a MarkovChain.
    """

    MIN_LENGTH = 2

    def __init__(self, length=MIN_LENGTH):
        """
        Args:
            length (int): Number of words in the window (raised to 2 when smaller)
        """
        self.words = [""] * max(length, self.MIN_LENGTH)

    def shift(self, word):
        """
        Drops the oldest word and appends the given one, keeping the length.

        Args:
            word (str): The word to append, surrounding whitespace is trimmed
        """
        self.words[:-1] = self.words[1:]
        self.words[-1] = word.strip()

    def __len__(self):
        return len(self.words)

    def __iter__(self):
        return iter(self.words)

    def __str__(self):
        return " ".join(self.words)

    def __repr__(self):
        return f"Prefix({self.words!r})"
