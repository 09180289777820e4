"""Text processing for product title normalization."""

import html
import logging
import re
from typing import List

logger = logging.getLogger(__name__)

# Category and generic words that carry no identity in a title
GENERIC_TITLE_WORDS = (
    "semi-automatic",
    "espresso",
    "machine",
    "coffee",
    "grinder",
    "burr",
    "electric",
    "manual",
    "automatic",
)

_GENERIC_WORDS_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(word) for word in GENERIC_TITLE_WORDS) + r")\b",
    re.IGNORECASE,
)


class TextProcessor:
    """
    Text processing pipeline for product titles.

    Features:
    - Text normalization (HTML entities, tags, whitespace)
    - Noise prefix removal ([SALE], (NEW), ...)
    - Generic-word stripping for title comparison
    - Tokenization
    """

    def normalize_text(self, text: str, lowercase: bool = True, remove_html: bool = True) -> str:
        """
        Normalize text for processing.

        Args:
            text: Input text
            lowercase: Convert to lowercase
            remove_html: Remove HTML entities and tags

        Returns:
            Normalized text
        """
        if not text:
            return ""

        if remove_html:
            text = html.unescape(text)
            text = re.sub(r'<[^>]+>', '', text)

        text = re.sub(r'\s+', ' ', text).strip()

        if lowercase:
            text = text.lower()

        return text

    def clean_product_title(self, title: str) -> str:
        """
        Clean a product title for display and embedding input.

        Args:
            title: Product title

        Returns:
            Cleaned title (case preserved)
        """
        if not title:
            return ""

        cleaned = self.normalize_text(title, lowercase=False, remove_html=True)

        prefixes_to_remove = [
            r'^\[.*?\]\s*',  # [BEST SELLER], etc.
            r'^\(.*?\)\s*',  # (NEW), etc.
        ]
        for pattern in prefixes_to_remove:
            cleaned = re.sub(pattern, '', cleaned, flags=re.IGNORECASE)

        return re.sub(r'\s+', ' ', cleaned).strip()

    def strip_generic_words(self, title: str) -> str:
        """
        Lowercase a title and drop generic category words and punctuation.

        Args:
            title: Product title

        Returns:
            Title reduced to its identifying words
        """
        if not title:
            return ""

        text = self.normalize_text(title, lowercase=True, remove_html=True)
        text = _GENERIC_WORDS_RE.sub('', text)
        text = re.sub(r'[^\w\s]', ' ', text)
        return re.sub(r'\s+', ' ', text).strip()

    def title_tokens(self, title: str, min_length: int = 3) -> List[str]:
        """
        Tokenize a title for overlap scoring.

        Tokens of two characters or fewer are discarded.

        Args:
            title: Product title
            min_length: Minimum token length to keep

        Returns:
            List of tokens in title order
        """
        cleaned = self.strip_generic_words(title)
        return [token for token in cleaned.split(' ') if len(token) >= min_length]


# Global text processor instance
text_processor = TextProcessor()
