from jobledger.core.hashing import content_hash, jaccard, normalize_text, same_field, tokenize


def test_normalize_text_collapses_whitespace_and_case() -> None:
    assert normalize_text("  Senior\tPython \n Engineer ") == "senior python engineer"


def test_content_hash_ignores_formatting_noise() -> None:
    assert content_hash("Build APIs\nwith Python") == content_hash("  build apis with   python ")
    assert content_hash("Build APIs") != content_hash("Build services")


def test_tokenize_returns_unique_lowercase_words() -> None:
    assert tokenize("Python, python and SQL!") == frozenset({"python", "and", "sql"})
    assert tokenize(None) == frozenset()


def test_jaccard_handles_empty_sets() -> None:
    assert jaccard(frozenset(), frozenset({"a"})) == 0.0
    assert jaccard(frozenset({"a", "b"}), frozenset({"b", "c"})) == 1 / 3


def test_same_field_requires_both_values() -> None:
    assert same_field(" Acme ", "acme")
    assert not same_field(None, "Acme")
    assert not same_field("Acme", "Globex")
