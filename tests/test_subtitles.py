from lecture_assist.export.subtitles import format_srt_timestamp, render_srt, render_text
from lecture_assist.streaming.aggregator import Segment


def test_format_srt_timestamp():
    assert format_srt_timestamp(0) == "00:00:00,000"
    assert format_srt_timestamp(2500) == "00:00:02,500"
    assert format_srt_timestamp(3723004) == "01:02:03,004"
    assert format_srt_timestamp(-5) == "00:00:00,000"


def test_render_srt_two_segments():
    segments = [
        Segment(id="1", source_text="A", target_text="甲", t0=0, t1=2000),
        Segment(id="2", source_text="B", target_text="乙", t0=2500, t1=4000),
    ]
    out = render_srt(segments)
    blocks = out.strip().split("\n\n")
    assert blocks[0].split("\n") == ["1", "00:00:00,000 --> 00:00:02,000", "A", "甲"]
    assert blocks[1].split("\n") == ["2", "00:00:02,500 --> 00:00:04,000", "B", "乙"]


def test_render_srt_skips_non_final_and_defaults_end_time():
    segments = [
        Segment(id="1", source_text="draft", target_text="", t0=0, t1=100, final=False),
        Segment(id="2", source_text="C", target_text="丙", t0=5000, t1=0),
    ]
    out = render_srt(segments)
    assert "draft" not in out
    assert out.startswith("1\n00:00:05,000 --> 00:00:07,000\nC\n丙\n")


def test_render_srt_empty():
    assert render_srt([]) == ""


def test_render_text_joins_blocks():
    segments = [
        Segment(id="1", source_text="A", target_text="", t0=0, t1=1),
        Segment(id="2", source_text="B", target_text="乙", t0=1, t1=2),
    ]
    assert render_text(segments) == "A\n\nB\n乙\n"
    assert render_text([]) == ""
