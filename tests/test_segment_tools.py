"""Tests for segment extraction, batch splitting and segment formatting."""

from segment_tools import (
    add_linebreaks,
    describe_segment,
    extract_field_values,
    extract_segments,
    find_segment_text,
    split_batch,
)
from hl7_parser import DEFAULT_DELIMITERS

ORU = (
    "MSH|^~\\&|GEN|ICU|MON|ICU|20260101120000||ORU^R01|MSG001|P|2.3\n"
    "PID|1||12345||DOE^JOHN||19800101|M\n"
    "OBR|1|||VITALS\n"
    "OBX|1|NM|HR^HeartRate||72|bpm|||N\n"
    "NTE|1||note\n"
    "obx|2|NM|SPO2^SpO2||98|%|||N\n"
)

BATCH = (
    "FHS|^~\\&|APP|FAC\r\n"
    "BHS|^~\\&|APP|FAC\r\n"
    "\r\n"
    "MSH|^~\\&|A|B|C|D|20230101||ADT^A01|1|P|2.3\r\n"
    "PID|1||111\r\n"
    "MSH|^~\\&|A|B|C|D|20230101||ADT^A01|2|P|2.3\r\n"
    "PID|2||222\r\n"
    "msh|^~\\&|A|B|C|D|20230101||ADT^A01|3|P|2.3\r\n"
    "PID|3||333\r\n"
    "BTS|3\r\n"
    "FTS|1\r\n"
)


class TestExtractSegments:
    def test_collects_matching_segments_case_insensitively(self):
        result = extract_segments(ORU, "OBX|1|NM|HR^HeartRate||72|bpm|||N")

        assert result == "OBX|1|NM|HR^HeartRate||72|bpm|||N\nobx|2|NM|SPO2^SpO2||98|%|||N"

    def test_uses_document_line_terminator(self, two_patients):
        assert extract_segments(two_patients, "PID|1") == "PID|1||111||Doe^John\rPID|2||222||Roe^Jane"

    def test_invalid_reference_line(self):
        assert extract_segments(ORU, "") is None
        assert extract_segments(ORU, "1|2|3") is None

    def test_no_other_segments(self):
        assert extract_segments(ORU, "EVN|A01") == ""


class TestSplitBatch:
    def test_one_output_per_msh(self):
        split = split_batch(BATCH)

        assert split.count == 3
        assert all(m.startswith("MSH|") for m in split.messages)
        assert not split.requires_confirmation

    def test_envelope_before_first_message_is_dropped(self):
        split = split_batch(BATCH)

        assert "FHS" not in split.messages[0]
        assert "BHS" not in split.messages[0]
        assert split.messages[0] == "MSH|^~\\&|A|B|C|D|20230101||ADT^A01|1|P|2.3\r\nPID|1||111\r\n"

    def test_trailers_stay_with_last_message(self):
        last = split_batch(BATCH).messages[-1]
        assert last.endswith("PID|3||333\r\nBTS|3\r\nFTS|1\r\n")
        assert last.startswith("MSH|^~\\&|A|B|C|D|20230101||ADT^A01|3|")

    def test_custom_field_delimiter(self):
        text = "MSH#^~\\&#A\rPID#1\rMSH#^~\\&#B\rPID#2\r"
        split = split_batch(text)

        assert split.messages == ("MSH#^~\\&#A\rPID#1\r", "MSH#^~\\&#B\rPID#2\r")

    def test_threshold_requires_confirmation(self):
        text = "".join(f"MSH|^~\\&|A|B|C|D|x||ADT^A01|{i}|P|2.3\rPID|{i}\r" for i in range(5))
        split = split_batch(text, threshold=4)

        assert split.count == 5
        assert split.requires_confirmation
        assert len(split.messages) == 5

    def test_no_messages(self):
        assert split_batch("FHS|^~\\&|APP\rFTS|0\r").count == 0


class TestAddLinebreaks:
    def test_splits_run_together_segments(self, schema_23):
        text = "MSH|^~\\&|A|B|C|D|20230101||ADT^A01|1|P|2.3PID|1||12345||Doe^JohnPV1|1|I"
        result = add_linebreaks(text, schema_23)

        assert result == "MSH|^~\\&|A|B|C|D|20230101||ADT^A01|1|P|2.3\rPID|1||12345||Doe^John\rPV1|1|I"

    def test_leaves_formatted_message_alone(self, two_patients, schema_23):
        assert add_linebreaks(two_patients, schema_23) == two_patients

    def test_custom_z_segment_after_whitespace(self, schema_23):
        text = "MSH|^~\\&|A|B\nPID|1 ZPD|x"
        assert add_linebreaks(text, schema_23) == "MSH|^~\\&|A|B\nPID|1 \nZPD|x"

    def test_collapses_blank_lines(self, schema_23):
        assert add_linebreaks("MSH|^~\\&|A\n\nPID|1", schema_23) == "MSH|^~\\&|A\nPID|1"


class TestDescribeSegment:
    def test_fields_with_descriptions_and_components(self, schema_23):
        tree = describe_segment("PID|1||12345||Doe^John", schema_23)

        assert tree.splitlines() == [
            "PID-1 (Set ID - Patient ID) 1",
            "PID-3 (Patient ID (Internal ID)) 12345",
            "PID-5 (Patient Name) Doe^John",
            "    PID-5.1 Doe",
            "    PID-5.2 John",
        ]

    def test_prefixed_line(self, schema_23):
        tree = describe_segment("0042: PID|1", schema_23, DEFAULT_DELIMITERS)
        assert tree == "PID-1 (Set ID - Patient ID) 1"

    def test_header_encoding_characters_are_not_split(self, schema_23):
        tree = describe_segment("MSH|^~\\&|A", schema_23)
        assert tree.splitlines() == [
            "MSH-1 (Field Separator) |",
            "MSH-2 (Encoding Characters) ^~\\&",
            "MSH-3 (Sending Application) A",
        ]

    def test_undefined_segment(self, schema_23):
        assert describe_segment("ZZZ|a^b", schema_23).splitlines() == ["ZZZ-1 a^b", "    ZZZ-1.1 a", "    ZZZ-1.2 b"]

    def test_invalid_segment(self, schema_23):
        assert describe_segment("no segment here", schema_23) is None


def test_find_segment_text():
    assert find_segment_text("12 OBX|1", DEFAULT_DELIMITERS) == "OBX|1"
    assert find_segment_text("OBX", DEFAULT_DELIMITERS) is None


def test_extract_field_values_across_messages(adt_a01, two_patients):
    values = extract_field_values([adt_a01, two_patients], "PID-3")
    assert values == [(0, "12345"), (1, "111"), (1, "222")]


def test_extract_field_values_needs_structured_location(adt_a01):
    assert extract_field_values([adt_a01], "name") == []
