import logging

from dna_annotator.core.vcf import (
    VcfRecord,
    decode_special_chars,
    encode_special_chars,
    format_header_structure,
    is_valid_contig_name,
    is_valid_info_format_key,
    iter_records,
    parse_header,
    parse_header_structure,
    parse_info_field,
    parse_record,
    serialize_info_field,
    serialize_record,
    symbolic_allele_type,
    validate_record,
)


def test_reserved_characters_round_trip() -> None:
    reserved = ":;=%,\r\n\t"
    encoded = encode_special_chars(reserved)
    assert encoded == "%3A%3B%3D%25%2C%0D%0A%09"
    assert decode_special_chars(encoded) == reserved

    mixed = "a=b; c%d"
    assert decode_special_chars(encode_special_chars(mixed)) == mixed


def test_percent_is_encoded_once() -> None:
    assert encode_special_chars("%3A") == "%253A"
    assert decode_special_chars("%253A") == "%3A"
    assert decode_special_chars("%3a") == ":"


def test_parse_info_field() -> None:
    info = parse_info_field("DP=14;DB;AF=0.5,0.25;CLNDN=Alzheimer%3B_type_1")
    assert info == {
        "DP": "14",
        "DB": True,
        "AF": ["0.5", "0.25"],
        "CLNDN": "Alzheimer;_type_1",
    }
    assert parse_info_field(".") == {}
    assert parse_info_field("") == {}


def test_parse_info_field_skips_invalid_keys(caplog) -> None:
    with caplog.at_level(logging.WARNING):
        info = parse_info_field("1bad=3;GOOD=1;1000G")
    assert info == {"GOOD": "1", "1000G": True}
    assert "1bad" in caplog.text


def test_serialize_info_field() -> None:
    assert serialize_info_field({}) == "."
    assert serialize_info_field({"DB": True, "H2": False, "AF": ["0.5", None], "NOTE": "a;b"}) == "DB;AF=0.5,.;NOTE=a%3Bb"


def test_parse_record_rejects_headers_and_short_lines() -> None:
    assert parse_record("##fileformat=VCFv4.3") is None
    assert parse_record("#CHROM\tPOS\tID\tREF\tALT\tQUAL\tFILTER\tINFO") is None
    assert parse_record("1\t100\trs1\tA\tG\t.\tPASS") is None
    assert parse_record("") is None


def test_parse_record_fields() -> None:
    line = "chr1\t12345\trs42\tA\tG,<DEL>\t29.5\tq10;s50\tDP=3;DB\tGT:AD:GQ\t0/1:3,.:.\t1|1:4,5:40"
    record = parse_record(line, ["NA001", "NA002"])
    assert record is not None
    assert record.chrom == "chr1"
    assert record.pos == 12345
    assert record.id == "rs42"
    assert record.alt_alleles == ["G", "<DEL>"]
    assert record.qual == 29.5
    assert record.filter == ["q10", "s50"]
    assert record.info == {"DP": "3", "DB": True}
    assert record.samples == {
        "NA001": {"GT": "0/1", "AD": ["3", None], "GQ": None},
        "NA002": {"GT": "1|1", "AD": ["4", "5"], "GQ": "40"},
    }


def test_samples_ignored_without_names() -> None:
    record = parse_record("1\t100\t.\tA\t.\t.\t.\t.\tGT\t0/0")
    assert record is not None
    assert record.samples is None
    assert record.id is None
    assert record.alt is None
    assert record.qual is None
    assert record.filter is None


def test_record_round_trip() -> None:
    line = "19\t45411941\trs429358\tT\tC\t50\tPASS\tCLNSIG=Pathogenic;GENEINFO=APOE%3A348;DB\tGT:DP\t0/1:12\t./.:."
    names = ["A", "B"]
    record = parse_record(line, names)
    assert serialize_record(record) == line
    assert parse_record(serialize_record(record), names) == record


def test_serialize_puts_gt_first() -> None:
    record = VcfRecord(
        chrom="1",
        pos=10,
        ref="A",
        alt="T",
        samples={
            "S1": {"DP": "7", "GT": "0/1"},
            "S2": {"GQ": "30", "GT": "1/1"},
        },
    )
    fields = serialize_record(record).split("\t")
    assert fields[8] == "GT:DP:GQ"
    assert fields[9] == "0/1:7:."
    assert fields[10] == "1/1:.:30"
    assert fields[5] == "."


def test_parse_header_structure_handles_quotes() -> None:
    parsed = parse_header_structure('<ID=CLNDN,Number=.,Type=String,Description="Name, with \\"quotes\\", and = sign">')
    assert parsed == {
        "ID": "CLNDN",
        "Number": ".",
        "Type": "String",
        "Description": 'Name, with "quotes", and = sign',
    }
    assert parse_header_structure("not-a-structure") is None


def test_format_header_structure_escapes_quotes() -> None:
    text = format_header_structure({"ID": "X", "Number": "1", "Type": "String", "Description": 'say "hi"'})
    assert text == '<ID=X,Number=1,Type=String,Description="say \\"hi\\"">'
    assert parse_header_structure(text)["Description"] == 'say "hi"'


def test_parse_header() -> None:
    lines = [
        "##fileformat=VCFv4.3",
        "##fileDate=20240107",
        "##contig=<ID=1,length=249250621,assembly=GRCh37>",
        '##INFO=<ID=DP,Number=1,Type=Integer,Description="Total depth">',
        '##FORMAT=<ID=GT,Number=1,Type=String,Description="Genotype">',
        '##FILTER=<ID=q10,Description="Quality below 10">',
        '##ALT=<ID=DEL,Description="Deletion">',
        "#CHROM\tPOS\tID\tREF\tALT\tQUAL\tFILTER\tINFO\tFORMAT\tNA001\tNA002",
        "1\t100\t.\tA\tG\t.\t.\t.\tGT\t0/1\t0/0",
    ]
    header = parse_header(lines)
    assert header.file_format == "VCFv4.3"
    assert header.meta["fileDate"] == ["20240107"]
    assert header.contigs == [{"ID": "1", "length": "249250621", "assembly": "GRCh37"}]
    assert header.infos["DP"]["Description"] == "Total depth"
    assert "GT" in header.formats
    assert "q10" in header.filters
    assert "DEL" in header.alts
    assert header.samples == ["NA001", "NA002"]

    records = list(iter_records(lines))
    assert len(records) == 1
    assert records[0].samples["NA002"]["GT"] == "0/0"


def test_contig_name_rules() -> None:
    assert is_valid_contig_name("1")
    assert is_valid_contig_name("chrX")
    assert is_valid_contig_name("HLA-A*01:01")
    assert not is_valid_contig_name("*chr1")
    assert not is_valid_contig_name("=chr1")
    assert not is_valid_contig_name("chr(1)")
    assert not is_valid_contig_name("chr,1")
    assert not is_valid_contig_name("")


def test_info_key_rules() -> None:
    assert is_valid_info_format_key("CLNSIG")
    assert is_valid_info_format_key("AF.adj")
    assert is_valid_info_format_key("1000G")
    assert not is_valid_info_format_key("1kg")
    assert not is_valid_info_format_key("")


def test_validate_record() -> None:
    good = VcfRecord(chrom="1", pos=1, ref="ACGT", alt="A,*,<DEL:ME:ALU>,<CUSTOM>")
    assert validate_record(good).is_valid
    assert good.is_valid

    bad = VcfRecord(chrom="*1", pos=0, ref="X", alt="Z")
    result = validate_record(bad)
    assert not result.is_valid
    assert len(result.errors) == 4
    assert not bad.is_valid


def test_symbolic_allele_type() -> None:
    assert symbolic_allele_type("<DEL>") == "DEL"
    assert symbolic_allele_type("<DUP:TANDEM>") == "DUP"
    assert symbolic_allele_type("<NON_REF>") is None
    assert symbolic_allele_type("A") is None
