import unittest
from pathlib import Path

from speechcore.asr.config import TranscriptionConfig, validate_model_shape
from speechcore.asr.errors import ConfigValidationError
from speechcore.models import ASRModelConfig, AudioEncoderConfig, TextConfig


class TranscriptionConfigTests(unittest.TestCase):
    def test_defaults_match_qwen3_asr_layout(self) -> None:
        config = TranscriptionConfig()

        self.assertEqual(config.num_mel_bins, 128)
        self.assertEqual(config.num_attention_heads % config.num_key_value_heads, 0)
        self.assertEqual(config.max_chunk_duration_seconds, 20.0)
        self.assertEqual(config.max_new_tokens, 448)
        self.assertEqual(config.device, "auto")

    def test_grouped_query_heads_must_divide(self) -> None:
        with self.assertRaisesRegex(ConfigValidationError, "divisible by num_key_value_heads"):
            TranscriptionConfig(num_attention_heads=16, num_key_value_heads=6)

    def test_odd_head_dim_is_rejected(self) -> None:
        with self.assertRaisesRegex(ConfigValidationError, "head_dim must be even"):
            validate_model_shape(num_attention_heads=4, num_key_value_heads=2, head_dim=7)

    def test_invalid_runtime_values_are_rejected(self) -> None:
        invalid = [
            {"max_chunk_duration_seconds": 0.0},
            {"chunk_overlap_seconds": -1.0},
            {"max_chunk_duration_seconds": 2.0, "chunk_overlap_seconds": 2.0},
            {"encode_workers": 0},
            {"max_new_tokens": 0},
            {"downsample_factor": True},
            {"device": "tpu"},
            {"speaker_label": " "},
            {"rope_theta": 0.0},
        ]
        for overrides in invalid:
            with self.subTest(overrides=overrides):
                with self.assertRaises(ConfigValidationError):
                    TranscriptionConfig(**overrides)

    def test_config_errors_are_value_errors(self) -> None:
        with self.assertRaises(ValueError):
            TranscriptionConfig(max_new_tokens=-5)

    def test_shape_override_replaces_checkpoint_values(self) -> None:
        base = ASRModelConfig(
            audio_config=AudioEncoderConfig(output_dim=2048),
            text_config=TextConfig(),
        )
        config = TranscriptionConfig(
            model_path=Path("models/qwen3"),
            num_attention_heads=8,
            num_key_value_heads=4,
            head_dim=64,
            rope_theta=10_000.0,
        )

        kept = config.apply_to_model_config(base)
        overridden = config.apply_to_model_config(base, override_model_shape=True)

        self.assertEqual(kept.text_config.num_attention_heads, base.text_config.num_attention_heads)
        self.assertEqual(overridden.text_config.num_attention_heads, 8)
        self.assertEqual(overridden.text_config.num_key_value_heads, 4)
        self.assertEqual(overridden.text_config.head_dim, 64)
        self.assertEqual(overridden.text_config.rope_theta, 10_000.0)


if __name__ == "__main__":
    unittest.main()
