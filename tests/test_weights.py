import json
import tempfile
import unittest
from dataclasses import asdict
from pathlib import Path
from unittest.mock import patch

import torch
from safetensors.torch import save_file

from speechcore.asr.config import TranscriptionConfig
from speechcore.asr.errors import ConfigValidationError
from speechcore.models import (
    ASRModelConfig,
    AudioEncoderConfig,
    ForcedAligner,
    ForcedAlignerConfig,
    Qwen3ASRModel,
    TextConfig,
    load_model_config,
    load_pretrained,
    sanitize_weights,
)
from speechcore.models.tokenizer import HuggingFaceTokenizer, clean_asr_output, detected_language, load_tokenizer
from speechcore.models.weights import conv_layout_permutation


def _configs() -> tuple[AudioEncoderConfig, TextConfig]:
    audio = AudioEncoderConfig(
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
    )
    text = TextConfig(
        hidden_size=32,
        intermediate_size=64,
        num_hidden_layers=1,
        num_attention_heads=4,
        num_key_value_heads=2,
        head_dim=8,
    )
    return audio, text


def _write_checkpoint(model_dir: Path, model: Qwen3ASRModel, raw_config: dict[str, object]) -> None:
    """Save ``model`` under checkpoint naming: ``thinker.`` prefix, ``model.`` decoder, OIHW convs."""

    tensors: dict[str, torch.Tensor] = {}
    for key, tensor in model.state_dict().items():
        if key == "lm_head.weight" and raw_config.get("model_type") != "qwen3_forced_aligner":
            continue
        if key.endswith(("conv2d1.weight", "conv2d2.weight", "conv2d3.weight")):
            tensor = tensor.permute(2, 3, 0, 1)
        if key.startswith("text_model."):
            key = "model." + key[len("text_model."):]
        tensors["thinker." + key] = tensor.contiguous().clone()
    save_file(tensors, str(model_dir / "model.safetensors"))
    (model_dir / "config.json").write_text(json.dumps(raw_config), encoding="utf-8")


class SanitizeWeightsTests(unittest.TestCase):
    def test_keys_are_renamed_and_conv_permuted(self) -> None:
        conv = torch.randn(4, 1, 3, 3)
        embed = torch.randn(10, 8)

        sanitized = sanitize_weights(
            {
                "thinker.audio_tower.conv2d1.weight": conv,
                "thinker.model.embed_tokens.weight": embed,
                "thinker.model.layers.0.self_attn.rotary_emb.inv_freq": torch.ones(4),
                "thinker.audio_tower.proj1.weight": torch.randn(8, 8),
            }
        )

        self.assertEqual(tuple(sanitized["audio_tower.conv2d1.weight"].shape), (3, 3, 4, 1))
        torch.testing.assert_close(sanitized["audio_tower.conv2d1.weight"][1, 2, 3, 0], conv[3, 0, 1, 2])
        self.assertIs(sanitized["text_model.embed_tokens.weight"], embed)
        self.assertIs(sanitized["lm_head.weight"], embed)
        self.assertIn("audio_tower.proj1.weight", sanitized)
        self.assertFalse(any(key.endswith("inv_freq") for key in sanitized))

    def test_untied_checkpoint_keeps_missing_head(self) -> None:
        sanitized = sanitize_weights({"model.embed_tokens.weight": torch.randn(4, 2)}, tie_word_embeddings=False)

        self.assertNotIn("lm_head.weight", sanitized)

    def test_conv_layout_permutation(self) -> None:
        self.assertEqual(conv_layout_permutation("OIHW"), (2, 3, 0, 1))
        self.assertEqual(conv_layout_permutation("HWOI"), (0, 1, 2, 3))
        with self.assertRaisesRegex(ValueError, "Unsupported convolution weight layout"):
            conv_layout_permutation("OIHX")

    def test_non_4d_conv_weight_is_rejected(self) -> None:
        with self.assertRaisesRegex(ValueError, "4D"):
            sanitize_weights({"audio_tower.conv2d2.weight": torch.randn(3, 3)})


class LoadPretrainedTests(unittest.TestCase):
    def test_round_trip_reproduces_encoder_and_decoder(self) -> None:
        audio, text = _configs()
        torch.manual_seed(0)
        reference = Qwen3ASRModel(ASRModelConfig(audio_config=audio, text_config=text))
        reference.eval()
        reference.weights_loaded = True
        with torch.no_grad():
            reference.lm_head.weight.copy_(reference.text_model.embed_tokens.weight)

        raw_config = {
            "model_type": "qwen3_asr",
            "thinker_config": {"audio_config": asdict(audio), "text_config": asdict(text)},
        }
        logs: list[str] = []
        with tempfile.TemporaryDirectory() as temp_dir:
            model_dir = Path(temp_dir)
            _write_checkpoint(model_dir, reference, raw_config)

            loaded = load_pretrained(model_dir, log_callback=logs.append)

        self.assertIsInstance(loaded, Qwen3ASRModel)
        self.assertNotIsInstance(loaded, ForcedAligner)
        self.assertTrue(loaded.weights_loaded)
        self.assertTrue(loaded.audio_tower.weights_loaded)
        self.assertTrue(any(line.startswith("weights: loaded Qwen3ASRModel") for line in logs))

        features = torch.randn(16, 40)
        torch.testing.assert_close(loaded.encode(features), reference.encode(features))
        torch.testing.assert_close(loaded.lm_head.weight, reference.lm_head.weight)

    def test_forced_aligner_checkpoint_builds_aligner(self) -> None:
        audio, text = _configs()
        torch.manual_seed(0)
        reference = ForcedAligner(ForcedAlignerConfig(audio_config=audio, text_config=text, classify_num=12))
        raw_config = {
            "model_type": "qwen3_forced_aligner",
            "timestamp_segment_time": 80,
            "thinker_config": {"audio_config": asdict(audio), "text_config": asdict(text), "classify_num": 12},
        }
        with tempfile.TemporaryDirectory() as temp_dir:
            model_dir = Path(temp_dir)
            _write_checkpoint(model_dir, reference, raw_config)

            loaded = load_pretrained(model_dir)

        self.assertIsInstance(loaded, ForcedAligner)
        self.assertEqual(loaded.lm_head.out_features, 12)

    def test_missing_tensors_are_reported(self) -> None:
        audio, text = _configs()
        raw_config = {
            "model_type": "qwen3_asr",
            "thinker_config": {"audio_config": asdict(audio), "text_config": asdict(text)},
        }
        with tempfile.TemporaryDirectory() as temp_dir:
            model_dir = Path(temp_dir)
            save_file({"thinker.audio_tower.proj1.bias": torch.zeros(16)}, str(model_dir / "model.safetensors"))
            (model_dir / "config.json").write_text(json.dumps(raw_config), encoding="utf-8")

            with self.assertRaisesRegex(ValueError, "missing"):
                load_pretrained(model_dir)

    def test_transcription_config_applies_downsample_factor(self) -> None:
        audio, text = _configs()
        raw_config = {
            "model_type": "qwen3_asr",
            "thinker_config": {"audio_config": asdict(audio), "text_config": asdict(text)},
        }
        with tempfile.TemporaryDirectory() as temp_dir:
            model_dir = Path(temp_dir)
            (model_dir / "config.json").write_text(json.dumps(raw_config), encoding="utf-8")
            base = load_model_config(model_dir)

        applied = TranscriptionConfig(downsample_factor=4).apply_to_model_config(base)

        self.assertEqual(applied.downsample_factor, 4)
        self.assertEqual(applied.text_config.hidden_size, 32)

    def test_missing_config_json_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as temp_dir:
            with self.assertRaisesRegex(ConfigValidationError, "does not exist"):
                load_model_config(Path(temp_dir))


class TokenizerTests(unittest.TestCase):
    def test_clean_asr_output_strips_language_prefix_and_specials(self) -> None:
        raw = "language English<asr_text>Hello there.<|im_end|>"

        self.assertEqual(clean_asr_output(raw), "Hello there.")
        self.assertEqual(detected_language(raw), "English")
        self.assertIsNone(detected_language("plain text"))

    def test_huggingface_tokenizer_adapter(self) -> None:
        calls: dict[str, object] = {}

        class _Backend:
            def encode(self, text: str, add_special_tokens: bool) -> list[int]:
                calls["add_special_tokens"] = add_special_tokens
                return [1, 2]

            def decode(self, ids: list[int], skip_special_tokens: bool) -> str:
                calls["skip_special_tokens"] = skip_special_tokens
                return "ok"

        tokenizer = HuggingFaceTokenizer(_Backend())

        self.assertEqual(tokenizer.encode("hi"), [1, 2])
        self.assertEqual(tokenizer.decode((3,)), "ok")
        self.assertEqual(calls, {"add_special_tokens": False, "skip_special_tokens": False})

    def test_missing_transformers_has_install_hint(self) -> None:
        with patch("speechcore.models.tokenizer.import_module", side_effect=ModuleNotFoundError()):
            with self.assertRaisesRegex(ValueError, "speechcore\\[qwen3\\]"):
                load_tokenizer(Path("models/qwen3"))


if __name__ == "__main__":
    unittest.main()
