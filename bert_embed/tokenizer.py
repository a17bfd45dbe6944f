"""
WordPiece Tokenizer for BERT-style encoders.

TOKENIZATION OVERVIEW:
  A tokenizer converts raw text into a sequence of integer token IDs that the
  encoder can embed. For BERT this happens in three stages:

    "Café au lait, s'il vous plaît!"
      │ normalize_text   accent stripping + ASCII lowercasing
      ▼
    "cafe au lait, s'il vous plait!"
      │ segment_words    punctuation/CJK become their own words, split on spaces
      ▼
    ["cafe", "au", "lait", ",", "s", "'", "il", "vous", "plait", "!"]
      │ Tokenizer.tokenize   greedy longest-match WordPiece
      ▼
    [CLS] cafe au lait , s ' il vous pl ##ait ! [SEP]   (as ids)

WORDPIECE:
  Each word is decomposed greedily into the LONGEST pieces found in the
  vocabulary, scanning left to right:

    "unaffable" → "un" + "##aff" + "##able"

  The first piece of a word is looked up in the word table; every following
  piece is a continuation and is looked up in the subword table (pieces
  stored as "##xyz" in vocab.txt). A word that is present whole is always
  emitted as ONE token, never split.

  When no piece at all matches at some position, that single character is
  dropped and the scan moves on. If nothing in the word matched, the word
  becomes [UNK]. Both cases are logged at debug verbosity only.

SPECIAL TOKENS (bert-base-uncased layout):
  - [UNK] (id=100): whole word could not be decomposed
  - [CLS] (id=101): first token of every sequence (also used as padding)
  - [SEP] (id=102): last token of every sequence

TOKEN BUDGET:
  The output never exceeds max_tokens (minimum 2). Once only one slot is left
  (reserved for [SEP]), remaining pieces and words are skipped. Long inputs
  are truncated, never rejected.
"""

import re
import string
from types import MappingProxyType
from typing import Iterable, Mapping, Optional, Union


UNK_ID = 100
CLS_ID = 101
SEP_ID = 102

SUBWORD_PREFIX = "##"

# Returned by id_to_token for ids that are in neither table
UNKNOWN_PIECE = "[UNK TOKEN]"


# ═══════════════════════════════════════════════════════════════════════════
# 1. Text Normalizer
# ═══════════════════════════════════════════════════════════════════════════

_ACCENT_MAP = {
    "À": "A", "Á": "A", "Â": "A", "Ã": "A", "Ä": "A", "Å": "A",
    "à": "a", "á": "a", "â": "a", "ã": "a", "ä": "a", "å": "a",
    "È": "E", "É": "E", "Ê": "E", "Ë": "E",
    "è": "e", "é": "e", "ê": "e", "ë": "e",
    "Ì": "I", "Í": "I", "Î": "I", "Ï": "I",
    "ì": "i", "í": "i", "î": "i", "ï": "i",
    "Ò": "O", "Ó": "O", "Ô": "O", "Õ": "O", "Ö": "O",
    "ò": "o", "ó": "o", "ô": "o", "õ": "o", "ö": "o",
    "Ù": "U", "Ú": "U", "Û": "U", "Ü": "U",
    "ù": "u", "ú": "u", "û": "u", "ü": "u",
    "Ý": "Y", "ý": "y",
    "Ç": "C", "ç": "c",
    "Ñ": "N", "ñ": "n",
}

# Accent stripping followed by ASCII lowercasing, folded into ONE translate
# table: "É" goes straight to "e". Only A-Z are lowercased; other non-ASCII
# letters pass through untouched.
_NORMALIZE_TABLE = str.maketrans({
    **{accented: base.lower() for accented, base in _ACCENT_MAP.items()},
    **{upper: upper.lower() for upper in string.ascii_uppercase},
})


def normalize_text(text: Union[str, bytes]) -> str:
    """
    Strip accents from Latin letters and lowercase ASCII letters.

    Characters are atomic units: a multi-byte UTF-8 character is either
    mapped as a whole or copied unchanged. Raw bytes are accepted and decoded
    best-effort (malformed sequences become U+FFFD), so this never fails.

    Idempotent: normalize_text(normalize_text(s)) == normalize_text(s).

    Args:
        text: Input text, str or UTF-8 bytes.

    Returns:
        The normalized string.
    """
    if isinstance(text, (bytes, bytearray)):
        text = bytes(text).decode("utf-8", errors="replace")
    return text.translate(_NORMALIZE_TABLE)


# ═══════════════════════════════════════════════════════════════════════════
# 2. Word Segmenter
# ═══════════════════════════════════════════════════════════════════════════

# C's ispunct() in the "C" locale is exactly this set
_PUNCTUATION = frozenset(string.punctuation)

# C's isspace(): space, \t, \n, \v, \f, \r. Unicode spaces are NOT separators.
_WHITESPACE_RE = re.compile(r"[ \t\n\v\f\r]+")

_CJK_RANGES = (
    (0x4E00, 0x9FFF),    # CJK Unified Ideographs
    (0x3400, 0x4DBF),    # CJK Unified Ideographs Extension A
    (0x20000, 0x2A6DF),  # Extension B
    (0x2A700, 0x2B73F),  # Extension C
    (0x2B740, 0x2B81F),  # Extension D
    (0x2B920, 0x2CEAF),  # Extension E/F (starts at 0x2B920 like the HF tokenizer)
    (0xF900, 0xFAFF),    # CJK Compatibility Ideographs
    (0x2F800, 0x2FA1F),  # CJK Compatibility Ideographs Supplement
    (0x3000, 0x303F),    # CJK Symbols and Punctuation
    (0xFF00, 0xFFEF),    # Halfwidth and Fullwidth Forms
)

# Code points that take exactly three bytes in UTF-8
_THREE_BYTE_RANGE = (0x800, 0xFFFF)


def is_cjk_char(ch: str) -> bool:
    """True if the single character ch lies in one of the CJK blocks."""
    cp = ord(ch)
    return any(lo <= cp <= hi for lo, hi in _CJK_RANGES)


def _is_isolated_char(ch: str) -> bool:
    """Characters that always become a one-character word."""
    if ch in _PUNCTUATION:
        return True
    # Only three-byte CJK characters are isolated; supplementary-plane
    # ideographs stay attached to their neighbours.
    lo, hi = _THREE_BYTE_RANGE
    return lo <= ord(ch) <= hi and is_cjk_char(ch)


def segment_words(text: str) -> list[str]:
    """
    Split normalized text into words.

    Every ASCII punctuation character and every CJK ideograph/symbol gets a
    space inserted on both sides, then the text is split on whitespace runs.
    Empty words are dropped.

      "hello,world 你好" → ["hello", ",", "world", "你", "好"]

    Args:
        text: Normalized text (see normalize_text).

    Returns:
        Ordered list of non-empty words.
    """
    spaced = "".join(f" {ch} " if _is_isolated_char(ch) else ch for ch in text)
    return [word for word in _WHITESPACE_RE.split(spaced) if word]


# ═══════════════════════════════════════════════════════════════════════════
# 3. Vocabulary
# ═══════════════════════════════════════════════════════════════════════════

class Vocabulary:
    """
    Immutable WordPiece vocabulary: two disjoint piece → id tables.

      token_to_id          word-initial pieces   "un"    → 4895
      subword_token_to_id  continuation pieces   "aff"   → 10354  (from "##aff")

    Token ids are positions in the source token list. A piece starting with
    "##" is registered ONLY in the subword table (keyed without the marker);
    every other piece ONLY in the word table. The first occurrence of a
    duplicate piece wins.

    Built once when the model is loaded and shared by reference by every
    tokenization call; the tables are read-only mapping proxies.
    """

    def __init__(self, tokens: Iterable[str]):
        token_to_id: dict[str, int] = {}
        subword_token_to_id: dict[str, int] = {}
        id_to_token: dict[int, str] = {}
        id_to_subword_token: dict[int, str] = {}

        tokens = tuple(tokens)
        for token_id, piece in enumerate(tokens):
            if piece.startswith(SUBWORD_PREFIX):
                key = piece[len(SUBWORD_PREFIX):]
                if key not in subword_token_to_id:
                    subword_token_to_id[key] = token_id
                    id_to_subword_token[token_id] = piece
            elif piece not in token_to_id:
                token_to_id[piece] = token_id
                id_to_token[token_id] = piece

        self.token_to_id: Mapping[str, int] = MappingProxyType(token_to_id)
        self.subword_token_to_id: Mapping[str, int] = MappingProxyType(subword_token_to_id)
        self._id_to_token: Mapping[int, str] = MappingProxyType(id_to_token)
        self._id_to_subword_token: Mapping[int, str] = MappingProxyType(id_to_subword_token)
        self.tokens = tokens

        # Longest piece in either table. No substring longer than this can
        # match, so the longest-match scan starts here instead of at the
        # end of the word.
        self.max_piece_len = max(
            (len(p) for p in (*token_to_id, *subword_token_to_id)), default=0
        )

    @classmethod
    def from_file(cls, path: str) -> "Vocabulary":
        """
        Load a vocab.txt file (one piece per line, id = line number).

        Raises:
            FileNotFoundError: If the file doesn't exist.
        """
        with open(path, "r", encoding="utf-8") as f:
            return cls(line.rstrip("\r\n") for line in f)

    def id_to_token(self, token_id: int) -> str:
        """
        Piece string for an id: word table first, then subword table
        (returned with its "##" marker), else UNKNOWN_PIECE.
        """
        piece = self._id_to_token.get(token_id)
        if piece is not None:
            return piece
        return self._id_to_subword_token.get(token_id, UNKNOWN_PIECE)

    def __len__(self) -> int:
        """Number of entries in the source token list."""
        return len(self.tokens)


# ═══════════════════════════════════════════════════════════════════════════
# 4. WordPiece Tokenizer
# ═══════════════════════════════════════════════════════════════════════════

class Tokenizer:
    """
    Greedy longest-match-first WordPiece tokenizer.

    USAGE:
      vocab = Vocabulary.from_file("models/all-MiniLM-L6-v2/vocab.txt")
      tokenizer = Tokenizer(vocab, max_tokens=512)

      tokenizer.tokenize("running")       # → [101, 2770, 102]
      tokenizer.tokenize("unaffable")     # → [101, 4895, 10354, 3085, 102]
      tokenizer.tokenize("")              # → [101, 102]

    Stateless apart from the shared, read-only vocabulary: one instance can
    serve concurrent callers.
    """

    def __init__(
        self,
        vocab: Vocabulary,
        max_tokens: int = 512,
        cls_id: int = CLS_ID,
        sep_id: int = SEP_ID,
        unk_id: int = UNK_ID,
        logger=None,
    ):
        """
        Args:
            vocab: The shared vocabulary.
            max_tokens: Default token budget per text (the model's max_seq_len).
            cls_id, sep_id, unk_id: Special token ids.
            logger: Optional EmbedLogger; when verbose, receives debug
                    diagnostics for dropped characters and unknown words.
        """
        self.vocab = vocab
        self.max_tokens = max_tokens
        self.cls_id = cls_id
        self.sep_id = sep_id
        self.unk_id = unk_id
        self.logger = logger

    def tokenize(self, text: Union[str, bytes], max_tokens: Optional[int] = None) -> list[int]:
        """
        Convert text into token ids framed by [CLS] ... [SEP].

        Args:
            text: Raw input text.
            max_tokens: Token budget including the two special tokens.
                        Defaults to self.max_tokens.

        Returns:
            List of token ids; always starts with cls_id, ends with sep_id,
            and has length <= max(max_tokens, 2).
        """
        if max_tokens is None:
            max_tokens = self.max_tokens

        # One slot stays reserved for [SEP]
        limit = max_tokens - 1
        tokens = [self.cls_id]

        for word in segment_words(normalize_text(text)):
            if len(tokens) >= limit:
                break
            pieces = self._wordpiece(word, limit - len(tokens))
            if not pieces:
                if self._reporting:
                    self._debug(f"unknown word '{word}'")
                pieces = [self.unk_id]
            tokens.extend(pieces)

        tokens.append(self.sep_id)
        return tokens

    def _wordpiece(self, word: str, budget: int) -> list[int]:
        """
        Greedy longest-match decomposition of one word, at most budget pieces.

        Returns an empty list if no piece of the word matched.
        """
        ids: list[int] = []
        table = self.vocab.token_to_id
        report = self._reporting
        start = 0
        n = len(word)

        while start < n and len(ids) < budget:
            end = min(n, start + self.vocab.max_piece_len)
            piece_id = None
            while end > start:
                piece_id = table.get(word[start:end])
                if piece_id is not None:
                    break
                end -= 1

            if piece_id is not None:
                ids.append(piece_id)
                start = end
            else:
                # Nothing matches here, not even one character: drop it
                if report:
                    self._debug(f"unknown token '{word[start]}'")
                start += 1

            # Everything after the first position is a continuation
            table = self.vocab.subword_token_to_id

        return ids

    def decode_ids(self, token_ids: Iterable[int]) -> list[str]:
        """Map ids back to their piece strings (for inspection, not detokenization)."""
        return [self.vocab.id_to_token(t) for t in token_ids]

    @property
    def _reporting(self) -> bool:
        """True when diagnostics would be written anywhere."""
        return self.logger is not None and self.logger.verbose

    def _debug(self, msg: str) -> None:
        self.logger.log_debug(f"tokenize: {msg}")
