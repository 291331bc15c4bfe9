"""Skill name canonicalization and collision fingerprints.

normalize_text() is the single canonical-key function used by every pass
(import, normalization, collision detection, merge). It is pure and
idempotent: normalize_text(normalize_text(x)) == normalize_text(x).
"""

import hashlib
import re
from typing import Optional

BASIS_NAME = 'name'
BASIS_NAME_CATEGORY = 'name_category'
BASES = (BASIS_NAME, BASIS_NAME_CATEGORY)

HASH_LENGTH = 7

_PUNCTUATION_RE = re.compile(r'[./,–—-]')
_WHITESPACE_RE = re.compile(r'\s+')
_DISALLOWED_RE = re.compile(r'[^a-z0-9_]')
_UNDERSCORES_RE = re.compile(r'_+')


# ---------------------------------------------------------------------------
# Canonical keys
# ---------------------------------------------------------------------------

def normalize_text(text: Optional[str]) -> str:
    """Canonicalize display text into a [a-z0-9_] key."""
    if not text:
        return ''
    s = text.lower()
    s = s.replace('&', ' and ')
    s = s.replace('+', ' plus ')
    s = _PUNCTUATION_RE.sub(' ', s)
    s = _WHITESPACE_RE.sub('_', s)
    s = _DISALLOWED_RE.sub('', s)
    s = _UNDERSCORES_RE.sub('_', s)
    return s.strip('_')


def build_key(name: Optional[str], category: Optional[str] = None,
              basis: str = BASIS_NAME) -> str:
    """Build the comparison key for a skill under the chosen basis.

    'name' uses the display name alone; 'name_category' folds the category
    in so that e.g. "Spring" (framework) and "Spring" (season tooling) stay apart.
    """
    if basis not in BASES:
        raise ValueError(f'Unknown normalization basis: {basis}')
    if basis == BASIS_NAME_CATEGORY and category:
        return normalize_text(f'{name or ""}_{category}')
    return normalize_text(name)


# ---------------------------------------------------------------------------
# Hash-based disambiguation (auto-resolve mode only)
# ---------------------------------------------------------------------------

def build_hash(skill_type: Optional[str], category: Optional[str],
               subcategory: Optional[str], skill_name: Optional[str]) -> str:
    """Short stable fingerprint over the disambiguating context of a skill.

    Only used to tell colliding keys apart, not as a security hash.
    """
    ctx = '|'.join([skill_type or '', category or '', subcategory or '', skill_name or ''])
    return hashlib.sha1(ctx.encode('utf-8')).hexdigest()[:HASH_LENGTH]


def node_fingerprint(node) -> str:
    return build_hash(node.skill_type, node.category, node.subcategory, node.skill_name)


def is_disambiguation_of(key: Optional[str], base: str, fingerprint: str) -> bool:
    """True if key is base__hash or base__hash_<n>."""
    if not key:
        return False
    hashed = f'{base}__{fingerprint}'
    if key == hashed:
        return True
    prefix = f'{hashed}_'
    return key.startswith(prefix) and key[len(prefix):].isdigit()


def disambiguate(base: str, fingerprint: str, taken) -> str:
    """Return base__hash, or base__hash_<n> with the lowest free counter."""
    candidate = f'{base}__{fingerprint}'
    if candidate not in taken:
        return candidate
    counter = 1
    while f'{candidate}_{counter}' in taken:
        counter += 1
    return f'{candidate}_{counter}'
