import threading
import unittest

import torch

from speechcore.asr.errors import (
    AcceleratorComputeError,
    CacheInconsistencyError,
    ConfigValidationError,
    ModelNotLoadedError,
    TranscriptionCancelled,
)
from speechcore.models import (
    ASRModelConfig,
    AudioEncoder,
    AudioEncoderConfig,
    AudioEncoderLayer,
    DecodeCache,
    DecoderState,
    Downsampler,
    ForcedAlignerConfig,
    Qwen3ASRModel,
    TextConfig,
    TextDecoderLayer,
    TextModel,
)
from speechcore.models.decoder import causal_mask
from speechcore.models.downsample import downsampled_length


def _audio_config() -> AudioEncoderConfig:
    return AudioEncoderConfig(
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


def _text_config(**overrides: object) -> TextConfig:
    values = dict(
        hidden_size=32,
        intermediate_size=64,
        num_hidden_layers=2,
        num_attention_heads=4,
        num_key_value_heads=2,
        head_dim=8,
    )
    values.update(overrides)
    return TextConfig(**values)


def _tiny_model(**config_overrides: object) -> Qwen3ASRModel:
    torch.manual_seed(0)
    model = Qwen3ASRModel(
        ASRModelConfig(audio_config=_audio_config(), text_config=_text_config(), **config_overrides)
    )
    model.eval()
    model.weights_loaded = True
    return model


def _conv_tokens(frames: int) -> int:
    for _ in range(3):
        frames = (frames - 1) // 2 + 1
    return frames


class AudioEncoderTests(unittest.TestCase):
    def test_encoder_output_shape_follows_windows(self) -> None:
        torch.manual_seed(0)
        encoder = AudioEncoder(_audio_config())
        encoder.weights_loaded = True

        with torch.no_grad():
            out = encoder(torch.randn(16, 37))

        # 37 frames split into windows of 8: four full windows and one of 5.
        expected = 4 * _conv_tokens(8) + _conv_tokens(5)
        self.assertEqual(tuple(out.shape), (expected, 32))
        self.assertTrue(torch.isfinite(out).all())

    def test_encoder_accepts_batch_of_one(self) -> None:
        torch.manual_seed(0)
        encoder = AudioEncoder(_audio_config())
        encoder.weights_loaded = True
        features = torch.randn(16, 24)

        with torch.no_grad():
            torch.testing.assert_close(encoder(features.unsqueeze(0)), encoder(features))

    def test_encoder_rejects_wrong_mel_bins(self) -> None:
        encoder = AudioEncoder(_audio_config())
        encoder.weights_loaded = True

        with self.assertRaisesRegex(ValueError, "expected features"):
            encoder(torch.randn(8, 24))

    def test_encoder_requires_weights(self) -> None:
        encoder = AudioEncoder(_audio_config())

        with self.assertRaises(ModelNotLoadedError):
            encoder(torch.randn(16, 24))

    def test_encoder_layer_preserves_shape(self) -> None:
        layer = AudioEncoderLayer(_audio_config())

        with torch.no_grad():
            out = layer(torch.randn(1, 7, 16))

        self.assertEqual(tuple(out.shape), (1, 7, 16))

    def test_attention_blocks_group_windows(self) -> None:
        encoder = AudioEncoder(_audio_config())

        self.assertEqual(encoder.attention_blocks([1, 1, 1, 1, 1]), [2, 2, 1])


class DownsamplerTests(unittest.TestCase):
    def test_stride_one_is_identity(self) -> None:
        x = torch.randn(5, 3)

        self.assertIs(Downsampler(1)(x), x)

    def test_stride_four_averages_with_partial_tail(self) -> None:
        x = torch.arange(30, dtype=torch.float32).view(10, 3)

        out = Downsampler(4)(x)

        self.assertEqual(tuple(out.shape), (3, 3))
        torch.testing.assert_close(out[0], x[0:4].mean(dim=0))
        torch.testing.assert_close(out[2], x[8:10].mean(dim=0))

    def test_batched_input_keeps_batch_axis(self) -> None:
        out = Downsampler(2)(torch.randn(2, 7, 4))

        self.assertEqual(tuple(out.shape), (2, 4, 4))
        self.assertEqual(downsampled_length(7, 2), 4)

    def test_invalid_stride_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            Downsampler(0)


class TextDecoderTests(unittest.TestCase):
    def test_decoder_layer_preserves_shape(self) -> None:
        layer = TextDecoderLayer(_text_config())

        with torch.no_grad():
            out = layer(torch.randn(1, 6, 32))

        self.assertEqual(tuple(out.shape), (1, 6, 32))

    def test_causal_mask_uses_absolute_positions(self) -> None:
        mask = causal_mask(3, 2, 0, 5, torch.device("cpu"))

        self.assertEqual(mask.tolist(), [[True, True, True, True, False], [True, True, True, True, True]])

    def test_cache_offset_tracks_steps(self) -> None:
        torch.manual_seed(0)
        model = TextModel(_text_config(vocab_size=64))
        cache = DecodeCache(num_layers=2)

        with torch.no_grad():
            for step in range(5):
                model(torch.randn(1, 1, 32), step, cache)

        self.assertEqual(cache.offset, 5)
        self.assertEqual(cache.layer(0).length, 5)

    def test_repeated_position_raises(self) -> None:
        model = TextModel(_text_config(vocab_size=64))
        cache = DecodeCache(num_layers=2)

        with torch.no_grad():
            model(torch.randn(1, 3, 32), 0, cache)
            with self.assertRaises(CacheInconsistencyError):
                model(torch.randn(1, 1, 32), 2, cache)

    def test_incremental_decode_matches_full_forward(self) -> None:
        torch.manual_seed(0)
        model = TextModel(_text_config(vocab_size=64))
        inputs = torch.randn(1, 6, 32)
        cache = DecodeCache(num_layers=2)

        with torch.no_grad():
            full = model(inputs, 0)
            prefix = model(inputs[:, :4], 0, cache)
            step_a = model(inputs[:, 4:5], 4, cache)
            step_b = model(inputs[:, 5:6], 5, cache)

        torch.testing.assert_close(prefix, full[:, :4], atol=1e-5, rtol=1e-4)
        torch.testing.assert_close(step_a[:, 0], full[:, 4], atol=1e-5, rtol=1e-4)
        torch.testing.assert_close(step_b[:, 0], full[:, 5], atol=1e-5, rtol=1e-4)

    def test_invalidated_cache_cannot_be_reused(self) -> None:
        cache = DecodeCache(num_layers=1)
        cache.invalidate()

        with self.assertRaises(CacheInconsistencyError):
            cache.expect_position(0)


class ModelConfigTests(unittest.TestCase):
    def test_gqa_divisibility_is_rejected(self) -> None:
        with self.assertRaisesRegex(ConfigValidationError, "divisible"):
            _text_config(num_attention_heads=6, num_key_value_heads=4)

    def test_odd_head_dim_is_rejected(self) -> None:
        with self.assertRaisesRegex(ConfigValidationError, "even"):
            _text_config(head_dim=7)

    def test_audio_output_must_match_text_hidden(self) -> None:
        with self.assertRaisesRegex(ConfigValidationError, "output_dim"):
            ASRModelConfig(audio_config=_audio_config(), text_config=_text_config(hidden_size=64))

    def test_from_dict_reads_thinker_config(self) -> None:
        config = ASRModelConfig.from_dict(
            {
                "model_type": "qwen3_asr",
                "thinker_config": {
                    "audio_config": {"num_mel_bins": 16, "d_model": 16, "encoder_attention_heads": 2, "output_dim": 32},
                    "text_config": {"hidden_size": 32, "num_attention_heads": 4, "num_key_value_heads": 2, "head_dim": 8},
                    "audio_token_id": 7,
                },
                "support_languages": ["Chinese", "English"],
            }
        )

        self.assertEqual(config.audio_config.num_mel_bins, 16)
        self.assertEqual(config.text_config.num_key_value_heads, 2)
        self.assertEqual(config.audio_token_id, 7)
        self.assertEqual(config.support_languages, ("Chinese", "English"))

    def test_forced_aligner_segment_time_is_milliseconds(self) -> None:
        config = ForcedAlignerConfig.from_dict(
            {
                "model_type": "qwen3_forced_aligner",
                "timestamp_segment_time": 80,
                "thinker_config": {"classify_num": 10},
            }
        )

        self.assertAlmostEqual(config.timestamp_segment_time, 0.08)
        self.assertEqual(config.classify_num, 10)


class DecodeSessionTests(unittest.TestCase):
    def _prompt(self, model: Qwen3ASRModel) -> torch.Tensor:
        audio = torch.randn(3, 32)
        return model.embed_prompt(model.build_prompt_ids(3), audio)

    def test_conv_stem_reduces_time_eightfold_without_downsampler(self) -> None:
        model = _tiny_model()
        features = torch.randn(16, 32)

        self.assertEqual(model.config.downsample_factor, 1)
        self.assertEqual(tuple(model.encode(features).shape), (32 // 8, 32))
        self.assertEqual(tuple(_tiny_model(downsample_factor=4).encode(features).shape), (1, 32))

    def test_prompt_places_audio_embeddings(self) -> None:
        model = _tiny_model()
        audio = torch.randn(3, 32)
        ids = model.build_prompt_ids(3, [11, 12])

        embeds = model.embed_prompt(ids, audio)

        self.assertEqual(ids[-2:], [11, 12])
        self.assertEqual(ids.count(model.config.audio_token_id), 3)
        start = ids.index(model.config.audio_token_id)
        torch.testing.assert_close(embeds[start:start + 3], audio)

    def test_generate_stops_at_token_budget(self) -> None:
        model = _tiny_model()
        with torch.no_grad():
            model.lm_head.weight.zero_()
        session = model.new_session(max_new_tokens=4)

        generated = session.generate(self._prompt(model))

        self.assertEqual(generated, [0, 0, 0, 0])
        self.assertIs(session.state, DecoderState.FINISHED)
        self.assertFalse(session.cache.valid)

    def test_generate_stops_at_eos(self) -> None:
        model = _tiny_model(eos_token_ids=(0,))
        with torch.no_grad():
            model.lm_head.weight.zero_()
        session = model.new_session(max_new_tokens=8)

        generated = session.generate(self._prompt(model))

        self.assertEqual(generated, [])
        self.assertIs(session.state, DecoderState.FINISHED)

    def test_offset_after_prefill_and_steps(self) -> None:
        model = _tiny_model()
        session = model.new_session()
        prompt = self._prompt(model)

        session.prefill(prompt)
        for step in range(3):
            session.step(0, session.cache.offset)

        self.assertEqual(session.cache.offset, prompt.shape[0] + 3)
        self.assertIs(session.state, DecoderState.DECODING)

    def test_step_at_wrong_position_fails_session(self) -> None:
        model = _tiny_model()
        session = model.new_session()
        session.prefill(self._prompt(model))

        with self.assertRaises(CacheInconsistencyError):
            session.step(0, 0)
        self.assertIs(session.state, DecoderState.FAILED)
        with self.assertRaises(CacheInconsistencyError):
            session.step(0, session.cache.offset)

    def test_concurrent_step_is_rejected(self) -> None:
        model = _tiny_model()
        session = model.new_session()
        session._step_lock.acquire()
        try:
            with self.assertRaisesRegex(CacheInconsistencyError, "concurrent"):
                session.step(0, 0)
        finally:
            session._step_lock.release()

    def test_prefill_only_on_empty_session(self) -> None:
        model = _tiny_model()
        session = model.new_session()
        prompt = self._prompt(model)
        session.prefill(prompt)

        with self.assertRaises(CacheInconsistencyError):
            session.prefill(prompt)

    def test_should_stop_cancels_and_fails_session(self) -> None:
        model = _tiny_model()
        with torch.no_grad():
            model.lm_head.weight.zero_()
        session = model.new_session(max_new_tokens=16)

        with self.assertRaises(TranscriptionCancelled) as ctx:
            session.generate(self._prompt(model), should_stop=lambda: "cancelled")

        self.assertEqual(ctx.exception.reason, "cancelled")
        self.assertIs(session.state, DecoderState.FAILED)

    def test_runtime_error_becomes_accelerator_error(self) -> None:
        model = _tiny_model()
        session = model.new_session()

        def _boom(*args: object, **kwargs: object) -> torch.Tensor:
            raise RuntimeError("device lost")

        model.text_model.forward = _boom  # type: ignore[method-assign]
        with self.assertRaisesRegex(AcceleratorComputeError, "device lost"):
            session.prefill(torch.randn(4, 32))
        self.assertIs(session.state, DecoderState.FAILED)

    def test_new_session_requires_weights(self) -> None:
        model = _tiny_model()
        model.weights_loaded = False

        with self.assertRaises(ModelNotLoadedError):
            model.new_session()
        with self.assertRaises(ModelNotLoadedError):
            model.encode(torch.randn(16, 8))

    def test_sessions_on_one_model_run_in_parallel_threads(self) -> None:
        model = _tiny_model()
        with torch.no_grad():
            model.lm_head.weight.zero_()
        prompt = self._prompt(model)
        results: list[list[int]] = []
        lock = threading.Lock()

        def _decode() -> None:
            tokens = model.new_session(max_new_tokens=3).generate(prompt)
            with lock:
                results.append(tokens)

        threads = [threading.Thread(target=_decode) for _ in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(results, [[0, 0, 0]] * 3)


if __name__ == "__main__":
    unittest.main()
