"""
Name conversion helpers.

Entity and attribute names in the data model are camelCase. Database tables
and columns use the snake_case form of the same name, generated files use
kebab-case or snake_case file names and PascalCase class names. All of these
conversions live here so the ORM and the code generator agree on them.
"""

import re
from typing import Dict, List

_CAMEL_BOUNDARY = re.compile(r"([a-z0-9])([A-Z0-9])")
_WORD_SEPARATORS = re.compile(r"[_\-\s]+")

IRREGULAR_PLURALS: Dict[str, str] = {
    "child": "children",
    "person": "people",
    "ox": "oxen",
    "mouse": "mice",
    "man": "men",
    "woman": "women",
    "tooth": "teeth",
    "foot": "feet",
    "goose": "geese",
    "louse": "lice",
    "cactus": "cacti",
    "fungus": "fungi",
    "focus": "foci",
    "thesis": "theses",
    "analysis": "analyses",
    "diagnosis": "diagnoses",
    "phenomenon": "phenomena",
    "criterion": "criteria",
    "radius": "radii",
    "alumnus": "alumni",
    "appendix": "appendices",
    "index": "indices",
    "formula": "formulae",
    "syllabus": "syllabi",
    "bacterium": "bacteria",
    "curriculum": "curricula",
    "datum": "data",
    "axis": "axes",
    "crisis": "crises",
    "ellipsis": "ellipses",
    "hypothesis": "hypotheses",
    "basis": "bases",
    "parenthesis": "parentheses",
    "oasis": "oases",
    "neurosis": "neuroses",
}


def split_camel_case(name: str, separator: str = "_") -> str:
    """
    Split a camel or Pascal case name into lowercase words.

    Args:
        name: Name such as "userAccount" or "UserAccount"
        separator: String placed between the words

    Returns:
        Lowercase name, e.g. "user_account" for separator "_"
    """
    if not name:
        return ""
    return _CAMEL_BOUNDARY.sub(r"\1" + separator + r"\2", name).lower()


def get_sql_ready_name(name: str) -> str:
    """Convert an entity or attribute name to its table or column name.

    Dotted names ("userAccount.firstName") keep the dot and convert each part.
    """
    return split_camel_case(name, "_")


def _split_words(name: str) -> List[str]:
    spaced = _CAMEL_BOUNDARY.sub(r"\1 \2", name)
    return [word for word in _WORD_SEPARATORS.split(spaced) if word]


def to_pascal_case(name: str) -> str:
    """Convert snake, kebab or camel case to PascalCase."""
    return "".join(word[0].upper() + word[1:].lower() for word in _split_words(name))


def to_camel_case(name: str) -> str:
    """Convert snake, kebab or Pascal case to camelCase."""
    pascal = to_pascal_case(name)
    if not pascal:
        return ""
    return pascal[0].lower() + pascal[1:]


def to_kebab_case(name: str) -> str:
    """Convert a name to lowercase words joined by hyphens."""
    return "-".join(word.lower() for word in _split_words(name))


def to_snake_case(name: str) -> str:
    """Convert a name to lowercase words joined by underscores."""
    return "_".join(word.lower() for word in _split_words(name))


def convert_sql_name_to_property(name: str) -> str:
    """Convert a snake_case column name back to its camelCase property name.

    Each part of a dotted name is converted separately.
    """
    return ".".join(to_camel_case(part) if "_" in part else part for part in name.split("."))


def pluralize(name: str) -> str:
    """
    Return the plural form of an entity name.

    Irregular nouns are looked up on the last word of the name, so
    "accountPerson" becomes "accountPeople".

    Args:
        name: Singular name in camel case

    Returns:
        Plural name with the same leading case
    """
    if not name:
        return name

    words = _split_words(name)
    last_word = words[-1].lower()
    prefix = name[: len(name) - len(words[-1])]

    if last_word in IRREGULAR_PLURALS:
        plural = IRREGULAR_PLURALS[last_word]
        if words[-1][0].isupper():
            plural = plural[0].upper() + plural[1:]
        return prefix + plural

    if name.endswith("y") and len(name) > 1 and name[-2].lower() not in "aeiou":
        return name[:-1] + "ies"

    if name.endswith(("s", "x", "z", "sh", "ch")):
        return name + "es"

    return name + "s"
