import pytest

from hl7_schema import SchemaCatalog

ADT_A01 = "MSH|^~\\&|A|B|C|D|20230101||ADT^A01|1|P|2.3\rPID|1||12345||Doe^John\r"

TWO_PATIENTS = (
    "MSH|^~\\&|A|B|C|D|20230101||ADT^A01|1|P|2.3\r"
    "PID|1||111||Doe^John\r"
    "PID|2||222||Roe^Jane\r"
)


@pytest.fixture
def adt_a01():
    return ADT_A01


@pytest.fixture
def two_patients():
    return TWO_PATIENTS


@pytest.fixture
def catalog():
    return SchemaCatalog()


@pytest.fixture
def schema_23(catalog):
    return catalog.load("2.3")
