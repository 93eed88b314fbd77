from types import SimpleNamespace

import pytest

from tripledger.auditor import audit_completeness, verify_batch, verify_completed_batches


def _entries(*pairs: tuple[int, str]) -> list[SimpleNamespace]:
    return [SimpleNamespace(row_number=row, outcome=outcome) for row, outcome in pairs]


def test_complete_when_every_row_has_one_outcome() -> None:
    proof = audit_completeness(
        4, _entries((1, "imported"), (2, "duplicate"), (3, "cancelled"), (4, "skipped")), batch_id=7
    )

    assert proof.is_complete is True
    assert proof.batch_id == 7
    assert proof.accounted_rows == 4
    assert (proof.imported_rows, proof.duplicate_rows, proof.cancelled_rows, proof.skipped_rows) == (1, 1, 1, 1)


def test_missing_row_breaks_the_proof() -> None:
    proof = audit_completeness(3, _entries((1, "imported"), (3, "error")))

    assert proof.is_complete is False
    assert proof.missing_rows == (2,)
    assert proof.accounted_rows == 2


def test_repeated_row_breaks_the_proof_even_when_totals_match() -> None:
    proof = audit_completeness(3, _entries((1, "imported"), (1, "duplicate"), (3, "imported")))

    assert proof.accounted_rows == 3
    assert proof.repeated_rows == (1,)
    assert proof.missing_rows == (2,)
    assert proof.is_complete is False


def test_rows_outside_the_file_break_the_proof() -> None:
    proof = audit_completeness(1, _entries((1, "imported"), (5, "error")))

    assert proof.unexpected_rows == (5,)
    assert proof.is_complete is False


def test_empty_batch_is_trivially_complete() -> None:
    assert audit_completeness(0, []).is_complete is True


def test_verify_persisted_batches(importer, mtm_file: bytes, modivcare_text: str) -> None:
    first = importer.commit(mtm_file, "mtm.csv", opco_code="METRIX", broker_account_code="MTM_MAIN")
    second = importer.commit(
        modivcare_text, "mc.txt", opco_code="SAHRAWI", broker_account_code="MODIVCARE_SAHRAWI"
    )

    with importer.session_factory() as db:
        single = verify_batch(db, first.import_id)
        everything = verify_completed_batches(db)
        with pytest.raises(LookupError):
            verify_batch(db, 999)

    assert single.is_complete is True
    assert single.expected_rows == 5
    assert sorted(proof.batch_id for proof in everything) == [first.import_id, second.import_id]
    assert all(proof.is_complete for proof in everything)
