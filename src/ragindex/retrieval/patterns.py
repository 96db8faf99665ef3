"""
Static pattern tables for content-type detection and chunk breakpoints.

Each breakpoint table is an ordered sequence of (pattern, priority) pairs;
the chunker cuts just after the highest-priority pattern found in its
search window. Tables are plain data and are built once at import time.
"""

import re
from typing import NamedTuple


class Breakpoint(NamedTuple):
    """A literal boundary pattern and its priority (higher wins)."""

    pattern: str
    priority: int


def _ranked(patterns: list[str]) -> tuple[Breakpoint, ...]:
    """Assign descending priorities in listed order, dropping repeats."""
    unique = list(dict.fromkeys(patterns))
    table = [Breakpoint(p, len(unique) - i) for i, p in enumerate(unique)]
    return tuple(sorted(table, key=lambda bp: bp.priority, reverse=True))


CODE_BREAKPOINTS = _ranked([
    # Block ends
    "\n}\n\n",
    "\n} // ",
    "\n} # ",
    "\n}\n",
    "}\n",
    ";\n\n",
    ";\n",
    "\n\n",
    # Declarations
    "\nclass ",
    "\ndef ",
    "\nfunction ",
    "\npublic ",
    "\nprivate ",
    "\nprotected ",
    "\nstatic ",
    "\nasync ",
    # Comment blocks
    "\n/**\n",
    "\n/*\n",
    "\n */\n",
    "\n#\n",
    # Statement starters
    "\nif ",
    "\nelse ",
    "\nelif ",
    "\nfor ",
    "\nwhile ",
    "\nswitch ",
    "\ncase ",
    "\nreturn ",
    # Indentation changes
    "\n    ",
    "\n  ",
    "\n\t",
    # Terminators
    "; ",
    "} ",
    ") ",
    "\n",
])

TEXT_BREAKPOINTS = _ranked([
    "\n\n",
    ".\n\n",
    ". ",
    ".\n",
    "? ",
    "! ",
    "?\n",
    "!\n",
    ":\n",
    "\n- ",
    "\n* ",
    "\n",
    ": ",
    ", ",
    ") ",
    "] ",
])

# Last-resort cut characters when no breakpoint is in the window
CODE_FALLBACK = re.compile(r"[\s{}();]")
TEXT_FALLBACK = " "

# Segment boundaries for parallel chunking fall back to any newline
SEGMENT_FALLBACK = "\n"

CODE_INDICATORS: tuple[str, ...] = tuple(dict.fromkeys([
    # Syntax
    "{", "}", ";", "=>", "->", "!=", "==", "===", "+=", "-=", "*=", "/=", "%=",
    # Keywords
    "def ", "class ", "function ", "import ", "public ", "private ", "protected ",
    "const ", "var ", "let ", "static ", "final ", "void ", "int ", "string ",
    "return ", "if ", "else ", "for ", "while ", "switch ", "case ",
    # Markers
    "#!/", "#include", "package ", "module ", "namespace ", "using ", "extends ",
    "implements ", "interface ", "@Override", "async ", "await ", "yield ",
    # Method chains
    ".map(", ".filter(", ".reduce(", ".forEach(", ".then(", ".catch(",
    # Idioms
    "try {", "catch (", "throw new", "new ", "this.", "self.", "super.",
    "export ", "require(", "module.exports", "public class", "private class",
    "protected class", "enum ", "struct ", "typedef ", "template<", "#define ",
    "#ifdef", "func ", "protocol ", "extension ", "@interface", "@implementation",
]))

INDENTED_LINE = re.compile(r"^\s+\S")
CODE_CHAR_LINE = re.compile(r"[{}();=<>]")
COMMENT_LINE = re.compile(r"^\s*(//|#|/\*|\*|--)")

# Detection weights and thresholds
DETECTION_SAMPLE_SIZE = 5000
INDENTATION_WEIGHT = 10.0
CODE_CHAR_WEIGHT = 15.0
COMMENT_WEIGHT = 10.0
CODE_SCORE_THRESHOLD = 8.0
INDENTATION_THRESHOLD = 0.3
CODE_CHAR_THRESHOLD = 0.4
