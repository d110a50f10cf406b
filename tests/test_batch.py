import pytest

from llama_stream import BatchBuffer


def test_add_token_records_slot():
    batch = BatchBuffer(n_tokens=4)
    batch.add_token(42, 0, [0], False)
    batch.add_token(7, 1, (0,), True)

    assert batch.n_tokens() == 2
    assert batch.space_left() == 2
    assert batch.slots() == [(42, 0, (0,), False), (7, 1, (0,), True)]


def test_add_token_past_capacity_raises():
    batch = BatchBuffer(n_tokens=2)
    batch.add_token(1, 0, [0], False)
    batch.add_token(2, 1, [0], True)

    with pytest.raises(IndexError):
        batch.add_token(3, 2, [0], True)
    assert batch.n_tokens() == 2


def test_default_capacity_is_512():
    batch = BatchBuffer()
    assert batch.capacity() == 512


def test_reset_empties_the_batch():
    batch = BatchBuffer(n_tokens=2)
    batch.add_token(1, 0, [0], True)
    batch.reset()

    assert batch.n_tokens() == 0
    assert batch.space_left() == 2


def test_add_sequence_requests_logits_for_last_token_only():
    batch = BatchBuffer(n_tokens=8)
    batch.add_sequence([10, 11, 12], 5, (0,), logits_last=True)

    assert batch.token == [10, 11, 12]
    assert batch.pos == [5, 6, 7]
    assert batch.logits == [False, False, True]


def test_add_sequence_overflow_adds_nothing():
    batch = BatchBuffer(n_tokens=2)

    with pytest.raises(IndexError):
        batch.add_sequence([1, 2, 3], 0, (0,), logits_last=True)
    assert batch.n_tokens() == 0


def test_too_many_sequence_ids():
    batch = BatchBuffer(n_tokens=2, n_seq_max=1)

    with pytest.raises(ValueError):
        batch.add_token(1, 0, [0, 1], True)


def test_invalid_capacity():
    with pytest.raises(ValueError):
        BatchBuffer(n_tokens=0)


def test_closed_batch_rejects_tokens():
    batch = BatchBuffer(n_tokens=2)
    batch.add_token(1, 0, [0], True)
    batch.close()

    assert batch.n_tokens() == 0
    with pytest.raises(RuntimeError):
        batch.add_token(1, 0, [0], True)
