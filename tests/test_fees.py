import pytest

from economics_dashboard.metrics.fees import FeeCategory, classify_fee, is_platform_fee, normalize_fee_type


@pytest.mark.parametrize(
    "name, expected",
    [
        ("FBAPerUnitFulfillmentFee", FeeCategory.FULFILLMENT),
        ("FBA_FULFILLMENT_FEES", FeeCategory.FULFILLMENT),
        ("FBAStorageFee", FeeCategory.STORAGE),
        ("FBA_STORAGE_FEE", FeeCategory.STORAGE),
        ("AgedInventorySurcharge", FeeCategory.STORAGE),
        ("ReferralFee", FeeCategory.REFERRAL),
        ("VariableClosingFee", FeeCategory.REFERRAL),
        ("RefundCommission", FeeCategory.REFUND),
        ("FBACustomerReturnPerUnitFee", FeeCategory.REFUND),
        ("FBADisposalFee", FeeCategory.DISPOSAL),
        ("FBA-Removal-Fee", FeeCategory.DISPOSAL),
        ("WarehouseLostReimbursement", FeeCategory.REIMBURSEMENT),
        ("SomethingNew", FeeCategory.OTHER),
        ("", FeeCategory.OTHER),
        (None, FeeCategory.OTHER),
    ],
)
def test_classify_fee(name, expected):
    assert classify_fee(name) is expected


def test_classification_is_idempotent_and_case_insensitive():
    assert classify_fee("fba storage fee") is classify_fee("FBA_STORAGE_FEE") is FeeCategory.STORAGE
    assert classify_fee("FBAStorageFee") is classify_fee("FBAStorageFee")


def test_normalize_fee_type():
    assert normalize_fee_type(" FBA_Storage-Fee ") == "fbastoragefee"
    assert normalize_fee_type(None) == ""


def test_reimbursement_is_not_a_platform_fee():
    assert not is_platform_fee(FeeCategory.REIMBURSEMENT)
    assert all(is_platform_fee(category) for category in FeeCategory if category is not FeeCategory.REIMBURSEMENT)
