import pytest

from media_extraction.domain.errors import InvalidRequestError
from media_extraction.domain.models import ArtifactKind, FrameAt, SegmentCut
from media_extraction.domain.naming import (
    NamingContext,
    audio_extension_for,
    encode_artifact_name,
    encode_timestamp,
    slugify,
)


class TestEncodeTimestamp:
    """時刻エンコードのテスト"""

    def test_pads_seconds_to_duration_width(self):
        """整数秒はジョブの長さの桁数でゼロ埋めされる"""
        context = NamingContext.for_job(125.0)

        assert context.timestamp_width == 3
        assert encode_timestamp(2.5, context) == "002_500"
        assert encode_timestamp(120.0, context) == "120_000"

    def test_contains_no_decimal_point(self):
        """ファイル名に小数点を含めない"""
        context = NamingContext.for_job(10.0)

        assert "." not in encode_timestamp(3.25, context)

    def test_lexicographic_order_matches_time_order(self):
        """辞書順と時刻順が一致する"""
        context = NamingContext.for_job(600.0)
        timestamps = [0.0, 0.001, 0.5, 1.0, 9.999, 10.0, 59.5, 100.0, 599.999]

        encoded = [encode_timestamp(value, context) for value in timestamps]

        assert encoded == sorted(encoded)

    def test_distinct_milliseconds_give_distinct_names(self):
        """ミリ秒単位で異なる時刻は異なる文字列になる"""
        context = NamingContext.for_job(5.0)
        encoded = {encode_timestamp(millis / 1000.0, context) for millis in range(0, 5000, 7)}

        assert len(encoded) == len(range(0, 5000, 7))

    def test_rounds_to_nearest_millisecond(self):
        """ミリ秒未満は四捨五入する"""
        context = NamingContext.for_job(5.0)

        assert encode_timestamp(1.9996, context) == "2_000"

    def test_rejects_negative_timestamp(self):
        """負の時刻は拒否する"""
        with pytest.raises(InvalidRequestError):
            encode_timestamp(-0.5, NamingContext())


class TestNamingContext:
    """命名コンテキストのテスト"""

    def test_falls_back_to_largest_requested_timestamp(self):
        """長さが不明なら要求中の最大時刻で桁数を決める"""
        context = NamingContext.for_job(None, [FrameAt(timestamp=3.0), SegmentCut(start_time=10.0, end_time=1500.0)])

        assert context.timestamp_width == 4

    def test_keeps_source_suffix_for_clips(self):
        """クリップの拡張子はソースに合わせる"""
        context = NamingContext.for_job(10.0, source_suffix=".MKV")

        assert context.clip_suffix == ".mkv"

    def test_unsafe_suffix_falls_back_to_mp4(self):
        """不正な拡張子は .mp4 にする"""
        context = NamingContext.for_job(10.0, source_suffix=".m p4")

        assert context.clip_suffix == ".mp4"


class TestEncodeArtifactName:
    """成果物名のテスト"""

    def test_frame_name(self):
        context = NamingContext.for_job(10.0)

        assert encode_artifact_name(ArtifactKind.FRAME, {"timestamp": 2.0}, context) == "frame_02_000.jpg"

    def test_sample_name_differs_from_frame_name(self):
        """同じ時刻でも種類が違えば名前が衝突しない"""
        context = NamingContext.for_job(10.0)

        frame = encode_artifact_name(ArtifactKind.FRAME, {"timestamp": 2.0}, context)
        sample = encode_artifact_name(ArtifactKind.SAMPLE, {"timestamp": 2.0}, context)

        assert frame != sample
        assert sample == "sample_02_000.jpg"

    def test_shot_boundary_name(self):
        context = NamingContext.for_job(90.0)
        params = {"shot_index": 3, "boundary": "END", "timestamp": 12.25}

        assert encode_artifact_name(ArtifactKind.SHOT, params, context) == "shot_0003_end_12_250.jpg"

    def test_shot_boundary_rejects_unknown_boundary(self):
        params = {"shot_index": 0, "boundary": "middle", "timestamp": 1.0}

        with pytest.raises(InvalidRequestError):
            encode_artifact_name(ArtifactKind.SHOT, params, NamingContext())

    def test_crop_name_uses_subject_slug(self):
        context = NamingContext.for_job(10.0)
        params = {"subject": "Lead Singer", "timestamp": 4.5}

        assert encode_artifact_name(ArtifactKind.CROP, params, context) == "crop_lead-singer_04_500.jpg"

    def test_audio_name_uses_codec_extension(self):
        context = NamingContext()

        assert encode_artifact_name(ArtifactKind.AUDIO, {"codec": "aac"}, context) == "audio_aac.m4a"
        assert encode_artifact_name(ArtifactKind.AUDIO, {"codec": "mp3"}, context) == "audio_mp3.mp3"

    def test_clip_name_contains_both_timestamps(self):
        context = NamingContext.for_job(10.0, source_suffix=".mov")
        params = {"start_time": 1.0, "end_time": 3.5}

        assert encode_artifact_name(ArtifactKind.CLIP, params, context) == "clip_01_000_03_500.mov"

    def test_mix_name_depends_on_inputs(self):
        """ミックス名は入力の並びから決まる"""
        context = NamingContext()
        first = encode_artifact_name(ArtifactKind.MIX, {"inputs": ("https://a/1.wav", "https://a/2.wav")}, context)
        same = encode_artifact_name(ArtifactKind.MIX, {"inputs": ("https://a/1.wav", "https://a/2.wav")}, context)
        other = encode_artifact_name(ArtifactKind.MIX, {"inputs": ("https://a/1.wav", "https://a/3.wav")}, context)

        assert first == same
        assert first != other
        assert first.startswith("mix_") and first.endswith(".m4a")


class TestHelpers:
    def test_slugify_normalizes_identifier(self):
        assert slugify("  Guest #2  ") == "guest-2"

    def test_slugify_rejects_empty_identifier(self):
        with pytest.raises(InvalidRequestError):
            slugify("!!!")

    def test_unknown_audio_codec_is_rejected(self):
        with pytest.raises(InvalidRequestError):
            audio_extension_for("dts-hd")
