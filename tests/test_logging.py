"""Log records carry the checkout attempt they were emitted for."""

import logging

from lessonpay.common.logging import ContextFilter, bind_attempt, buyer_id_ctx, reference_ctx


def make_record(**extra):
    record = logging.LogRecord("lessonpay", logging.INFO, __file__, 1, "checkout started", None, None)
    for key, value in extra.items():
        setattr(record, key, value)
    ContextFilter().filter(record)
    return record


def test_bound_attempt_is_stamped_on_records():
    """Records emitted inside a binding carry its reference and buyer."""

    with bind_attempt("LSN_L1_S1_1", "S1"):
        record = make_record()

    assert record.reference == "LSN_L1_S1_1"
    assert record.buyer_id == "S1"


def test_binding_restores_the_outer_attempt():
    """Leaving a binding puts back whatever was bound before it."""

    outer_reference, outer_buyer = reference_ctx.get(), buyer_id_ctx.get()

    with bind_attempt("LSN_L1_S1_1", "S1"):
        with bind_attempt("LSN_L1_S2_2", "S2"):
            assert reference_ctx.get() == "LSN_L1_S2_2"
        assert reference_ctx.get() == "LSN_L1_S1_1"
        assert buyer_id_ctx.get() == "S1"

    assert reference_ctx.get() == outer_reference
    assert buyer_id_ctx.get() == outer_buyer


def test_explicit_extra_wins_over_bound_context():
    """`extra={"reference": ...}` on a call overrides the bound attempt."""

    with bind_attempt("LSN_L1_S1_1", "S1"):
        record = make_record(reference="LSN_L9_S9_9")

    assert record.reference == "LSN_L9_S9_9"
    assert record.buyer_id == "S1"
