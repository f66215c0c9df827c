import random
import unittest

import torch

from speechcore.align import (
    classify_hint,
    correct_timestamps,
    longest_non_decreasing_subsequence,
    segment_text,
    validate_align_units,
    validate_monotonic_units,
)
from speechcore.models import AudioEncoderConfig, ForcedAligner, ForcedAlignerConfig, TextConfig


def _units(starts: list[float], ends: list[float] | None = None) -> list[dict[str, object]]:
    ends = ends if ends is not None else [start + 0.1 for start in starts]
    return [
        {"text": f"u{index}", "raw_start": start, "raw_end": end}
        for index, (start, end) in enumerate(zip(starts, ends))
    ]


def _assert_monotonic(test: unittest.TestCase, corrected: list[dict[str, object]]) -> None:
    for previous, current in zip(corrected, corrected[1:]):
        test.assertLessEqual(previous["start"], current["start"])
    for unit in corrected:
        test.assertGreaterEqual(unit["end"], unit["start"])


class TokenSegmenterTests(unittest.TestCase):
    def test_chinese_splits_per_character(self) -> None:
        self.assertEqual(segment_text("你好世界", "zh"), ["你", "好", "世", "界"])

    def test_cjk_text_without_hint_splits_per_character(self) -> None:
        self.assertEqual(segment_text("你好 世界"), ["你", "好", "世", "界"])

    def test_whitespace_language_splits_words(self) -> None:
        self.assertEqual(segment_text("hello world", "en"), ["hello", "world"])
        self.assertEqual(segment_text("  hello,   world!  "), ["hello,", "world!"])

    def test_japanese_groups_kana_runs(self) -> None:
        self.assertEqual(segment_text("こんにちは、カメラ", "ja"), ["こんにちは", "、", "カメラ"])

    def test_japanese_with_kanji_splits_per_character(self) -> None:
        self.assertEqual(len(segment_text("日本です", "ja")), 4)

    def test_korean_splits_per_syllable(self) -> None:
        self.assertEqual(segment_text("안녕 하세요", "ko"), ["안", "녕", "하", "세", "요"])

    def test_unknown_hint_falls_back_to_whitespace_and_logs(self) -> None:
        logs: list[str] = []

        units = segment_text("bonjour tout le monde", "klingon", log_callback=logs.append)

        self.assertEqual(units, ["bonjour", "tout", "le", "monde"])
        self.assertEqual(len(logs), 1)
        self.assertIn("unsupported language hint 'klingon'", logs[0])

    def test_classify_hint(self) -> None:
        self.assertEqual(classify_hint(None), "whitespace")
        self.assertEqual(classify_hint("zh_CN"), "cjk")
        self.assertEqual(classify_hint("Japanese"), "ja")
        self.assertEqual(classify_hint("en-US"), "whitespace")
        self.assertIsNone(classify_hint("xx"))

    def test_empty_text_has_no_units(self) -> None:
        self.assertEqual(segment_text("", "en"), [])
        self.assertEqual(segment_text("   ", "zh"), [])


class LongestSubsequenceTests(unittest.TestCase):
    def test_known_sequence(self) -> None:
        values = [0.0, 0.5, 0.3, 0.4, 1.0, 0.2, 1.2]

        indices = longest_non_decreasing_subsequence(values)

        self.assertEqual(len(indices), 5)
        picked = [values[index] for index in indices]
        self.assertEqual(picked, sorted(picked))

    def test_ties_are_non_decreasing(self) -> None:
        self.assertEqual(longest_non_decreasing_subsequence([1.0, 1.0, 1.0]), [0, 1, 2])

    def test_empty_input(self) -> None:
        self.assertEqual(longest_non_decreasing_subsequence([]), [])

    def test_random_inputs_match_quadratic_length(self) -> None:
        rng = random.Random(7)
        for _ in range(50):
            values = [float(rng.randint(0, 20)) for _ in range(rng.randint(1, 40))]
            best = [1] * len(values)
            for i in range(len(values)):
                for j in range(i):
                    if values[j] <= values[i]:
                        best[i] = max(best[i], best[j] + 1)

            indices = longest_non_decreasing_subsequence(values)

            self.assertEqual(len(indices), max(best))
            self.assertEqual(indices, sorted(indices))
            picked = [values[index] for index in indices]
            self.assertEqual(picked, sorted(picked))


class TimestampCorrectionTests(unittest.TestCase):
    def test_monotonic_input_is_unchanged(self) -> None:
        units = _units([0.0, 0.2, 0.4], [0.2, 0.4, 0.6])

        corrected = correct_timestamps(units)

        self.assertEqual([unit["start"] for unit in corrected], [0.0, 0.2, 0.4])
        self.assertEqual([unit["end"] for unit in corrected], [0.2, 0.4, 0.6])

    def test_outlier_is_clamped_between_neighbours(self) -> None:
        corrected = correct_timestamps(_units([0.0, 0.4, 0.1, 0.8]))

        self.assertEqual([unit["start"] for unit in corrected], [0.0, 0.1, 0.1, 0.8])
        _assert_monotonic(self, corrected)

    def test_subsequence_members_keep_raw_start(self) -> None:
        cases = {
            (1.0, 9.0, 2.0, 3.0, 4.0): [1.0, 2.0, 2.0, 3.0, 4.0],
            (5.0, 1.0, 2.0, 3.0): [1.0, 1.0, 2.0, 3.0],
            (1.0, 2.0, 9.0): [1.0, 2.0, 9.0],
            (3.0, 4.0, 1.0): [3.0, 4.0, 4.0],
        }
        for starts, expected in cases.items():
            with self.subTest(starts=starts):
                corrected = correct_timestamps(_units(list(starts)))

                self.assertEqual([unit["start"] for unit in corrected], expected)
                for index in longest_non_decreasing_subsequence(list(starts)):
                    self.assertEqual(corrected[index]["start"], starts[index])

    def test_random_subsequence_members_are_untouched(self) -> None:
        rng = random.Random(23)
        for _ in range(100):
            starts = [rng.uniform(0.0, 5.0) for _ in range(rng.randint(1, 25))]

            corrected = correct_timestamps(_units(starts))

            for index in longest_non_decreasing_subsequence(starts):
                self.assertEqual(corrected[index]["start"], starts[index])
            _assert_monotonic(self, corrected)

    def test_reverse_sorted_input_becomes_monotonic(self) -> None:
        corrected = correct_timestamps(_units([2.0, 1.5, 1.0, 0.5]))

        _assert_monotonic(self, corrected)
        self.assertEqual([unit["text"] for unit in corrected], ["u0", "u1", "u2", "u3"])

    def test_all_equal_input_is_kept(self) -> None:
        corrected = correct_timestamps(_units([1.0, 1.0, 1.0], [0.5, 1.5, 1.0]))

        self.assertEqual([unit["start"] for unit in corrected], [1.0, 1.0, 1.0])
        self.assertEqual([unit["end"] for unit in corrected], [1.0, 1.5, 1.0])

    def test_random_inputs_are_repaired(self) -> None:
        rng = random.Random(11)
        for _ in range(100):
            count = rng.randint(0, 30)
            starts = [rng.uniform(0.0, 10.0) for _ in range(count)]
            ends = [rng.uniform(0.0, 10.0) for _ in range(count)]

            corrected = correct_timestamps(_units(starts, ends))

            self.assertEqual(len(corrected), count)
            _assert_monotonic(self, corrected)
            validate_monotonic_units(corrected)

    def test_empty_input(self) -> None:
        self.assertEqual(correct_timestamps([]), [])


class AlignUnitValidationTests(unittest.TestCase):
    def test_non_numeric_start_is_rejected(self) -> None:
        with self.assertRaisesRegex(ValueError, r"units\[0\]\.raw_start must be numeric"):
            validate_align_units([{"text": "a", "raw_start": "0", "raw_end": 1.0}])

    def test_non_finite_end_is_rejected(self) -> None:
        with self.assertRaisesRegex(ValueError, "finite"):
            validate_align_units([{"text": "a", "raw_start": 0.0, "raw_end": float("nan")}])

    def test_decreasing_starts_are_rejected(self) -> None:
        with self.assertRaisesRegex(ValueError, "before the previous unit's start"):
            validate_monotonic_units(
                [{"text": "a", "start": 1.0, "end": 1.0}, {"text": "b", "start": 0.5, "end": 1.0}]
            )


class ForcedAlignerTests(unittest.TestCase):
    def _aligner(self) -> ForcedAligner:
        torch.manual_seed(0)
        config = ForcedAlignerConfig(
            audio_config=AudioEncoderConfig(
                num_mel_bins=16,
                encoder_layers=1,
                encoder_attention_heads=2,
                encoder_ffn_dim=32,
                d_model=16,
                max_source_positions=64,
                n_window=4,
                output_dim=32,
                n_window_infer=16,
                downsample_hidden_size=4,
            ),
            text_config=TextConfig(
                hidden_size=32,
                intermediate_size=64,
                num_hidden_layers=1,
                num_attention_heads=4,
                num_key_value_heads=2,
                head_dim=8,
            ),
            classify_num=50,
        )
        aligner = ForcedAligner(config)
        aligner.eval()
        aligner.weights_loaded = True
        return aligner

    def test_alignment_prompt_layout(self) -> None:
        aligner = self._aligner()
        config = aligner.config

        ids = aligner.build_alignment_ids(2, [[5, 6], [7]])

        self.assertEqual(
            ids,
            [
                config.audio_start_token_id, config.audio_token_id, config.audio_token_id, config.audio_end_token_id,
                5, 6, config.timestamp_token_id, config.timestamp_token_id,
                7, config.timestamp_token_id, config.timestamp_token_id,
            ],
        )

    def test_align_returns_one_unit_per_text_within_duration(self) -> None:
        aligner = self._aligner()

        class _Tokenizer:
            def encode(self, text: str) -> list[int]:
                return [10 + len(text)]

            def decode(self, token_ids: list[int]) -> str:
                return ""

        units = ["hello", "big", "world"]
        raw = aligner.align(torch.randn(16, 40), units, _Tokenizer(), audio_duration=1.0)

        self.assertEqual([unit["text"] for unit in raw], units)
        for unit in raw:
            self.assertGreaterEqual(unit["raw_start"], 0.0)
            self.assertLessEqual(unit["raw_start"], 1.0)
            self.assertLessEqual(unit["raw_end"], 1.0)
            bins = round(unit["raw_start"] / aligner.config.timestamp_segment_time)
            if unit["raw_start"] < 1.0:
                self.assertAlmostEqual(unit["raw_start"], bins * aligner.config.timestamp_segment_time)
        _assert_monotonic(self, correct_timestamps(validate_align_units(raw)))

    def test_align_without_units_skips_compute(self) -> None:
        aligner = self._aligner()
        aligner.weights_loaded = False

        self.assertEqual(aligner.align(torch.randn(16, 8), [], tokenizer=None), [])


if __name__ == "__main__":
    unittest.main()
