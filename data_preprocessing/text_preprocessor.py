"""
Text Preprocessor Module

This module provides the token normalization used before words enter a Markov chain,
and when a chain name becomes a database collection identifier.

### Features:
1. **Token Sanitizing**:
    - Removing every character outside the allowed alphabet
    - Keeping Italian accented vowels for ordinary tokens
    - Strict ASCII-only mode for collection identifiers
    - Lowercasing and trimming hyphens

2. **Basic Cleaning**:
    - Whitespace tokenization
    - Handling whitespace

---

### Example Usage:

```python
from data_preprocessing.text_preprocessor import TextPreprocessor

preprocessor = TextPreprocessor()

preprocessor.sanitize("Perché?")               # "perché"
preprocessor.sanitize("My Story #1", strict=True)  # "mystory1"
preprocessor.tokenize("  the quick\\tfox ")     # ["the", "quick", "fox"]
```
"""

import re

ACCENTED_VOWELS = "éèàìòù"

# Compiled once at import: an invalid pattern is a programming error and aborts loading.
STRICT_PATTERN = re.compile(r"[^A-Za-z0-9]+")
LENIENT_PATTERN = re.compile(f"[^A-Za-z0-9{ACCENTED_VOWELS}]+")


def sanitize(token, strict=False):
    """
    Normalize a raw token before it enters the model.

    Args:
        token (str): The raw token
        strict (bool): Only keep ASCII letters and digits (used for collection names)

    Returns:
        str: The filtered, lowercased token (may be empty)
    """
    pattern = STRICT_PATTERN if strict else LENIENT_PATTERN
    token = pattern.sub("", token)
    return token.strip("-").lower()


class TextPreprocessor:
    """Token level text normalization for Markov chain training."""

    def sanitize(self, token, strict=False):
        """Filters disallowed characters from a token and lowercases it."""
        return sanitize(token, strict=strict)

    def tokenize(self, text):
        """Splits text into whitespace delimited tokens."""
        return text.split()

    def handle_whitespace(self, text):
        """Removes extra whitespace from text."""
        return " ".join(text.split())
