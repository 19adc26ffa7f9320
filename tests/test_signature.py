"""Tests for signature history and retry-with-mutation generation."""

from dream_rag.core.signature import SignatureHistory, generate_unique


def _generator(signatures):
    calls = []

    def generate(seed):
        calls.append(seed)
        return f"value-{seed}", signatures[len(calls) - 1]

    return generate, calls


def test_fresh_signature_accepted_first_time():
    history = SignatureHistory()
    generate, calls = _generator(["a"])

    assert generate_unique(generate, history, seed=5) == "value-5"
    assert calls == [5]
    assert "a" in history


def test_collision_retries_with_perturbed_seed():
    history = SignatureHistory()
    history.add("a")
    generate, calls = _generator(["a", "b"])

    assert generate_unique(generate, history, seed=1) == "value-7920"
    assert calls == [1, 7920]
    assert "b" in history


def test_attempts_are_capped():
    history = SignatureHistory()
    history.add("a")
    generate, calls = _generator(["a", "a", "a", "a"])

    value = generate_unique(generate, history, seed=0, max_attempts=3)

    assert len(calls) == 3
    assert value == f"value-{2 * 7919}"


def test_history_is_bounded_fifo():
    history = SignatureHistory(max_size=2)
    history.add("a")
    history.add("b")
    history.add("c")

    assert len(history) == 2
    assert "a" not in history
    assert "c" in history
