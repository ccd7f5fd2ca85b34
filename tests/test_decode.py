"""
Unit tests for the decode module.

Payloads are built by hand from the ThinkGear row layout so that every
expected value can be checked against the byte it came from.
"""

import unittest

from OpenMindset.decode import (
    Attention,
    Blink,
    EegBands,
    Meditation,
    RawWave,
    SignalQuality,
    decode_frame,
    decode_rawdata,
    parse_payload,
)
from OpenMindset.errors import FrameTruncated
from OpenMindset.mindset import Mindset

BANDS_1_TO_8 = bytes.fromhex("000001" "000002" "000003" "000004" "000005" "000006" "000007" "000008")


class TestSampleTypes(unittest.TestCase):
    def test_byte_samples_are_unsigned(self):
        self.assertEqual(Attention(255).value, 255)
        with self.assertRaises(ValueError):
            Attention(256)
        with self.assertRaises(ValueError):
            Blink(-1)

    def test_raw_wave_range(self):
        RawWave(-32768)
        RawWave(32767)
        with self.assertRaises(ValueError):
            RawWave(32768)

    def test_band_range(self):
        with self.assertRaises(ValueError):
            EegBands(1 << 24, 0, 0, 0, 0, 0, 0, 0)

    def test_series(self):
        self.assertEqual(SignalQuality(200).series(), (("signal_quality", 200),))
        self.assertEqual(RawWave(-5).series(), (("wave", -5),))
        bands = EegBands(1, 2, 3, 4, 5, 6, 7, 8)
        self.assertEqual([name for name, _ in bands.series()], list(EegBands.FIELDS))

    def test_samples_are_values(self):
        self.assertEqual(Meditation(40), Meditation(40))
        self.assertNotEqual(Meditation(40), Attention(40))


class TestDecodeFrame(unittest.TestCase):
    def test_asic_eeg_bands(self):
        payload = bytes([Mindset.CODE_ASIC_EEG, 0x18]) + BANDS_1_TO_8
        self.assertEqual(decode_frame(payload), [EegBands(1, 2, 3, 4, 5, 6, 7, 8)])

    def test_asic_eeg_big_endian(self):
        value = bytes.fromhex("123456") + bytes(21)
        (bands,) = decode_frame(bytes([0x83, 0x18]) + value)
        self.assertEqual(bands.delta, 0x123456)

    def test_raw_wave_is_signed(self):
        self.assertEqual(decode_frame(bytes([0x80, 0x02, 0xFF, 0xFE])), [RawWave(-2)])
        self.assertEqual(decode_frame(bytes([0x80, 0x02, 0x01, 0x00])), [RawWave(256)])

    def test_typical_esense_frame(self):
        payload = (
            bytes([0x02, 0x00])
            + bytes([0x83, 0x18])
            + BANDS_1_TO_8
            + bytes([0x04, 0x3C, 0x05, 0x51])
        )
        self.assertEqual(
            decode_frame(payload),
            [
                SignalQuality(0),
                EegBands(1, 2, 3, 4, 5, 6, 7, 8),
                Attention(60),
                Meditation(81),
            ],
        )

    def test_unknown_codes_are_skipped(self):
        payload = bytes([0x03, 0x09, 0x04, 0x32, 0x90, 0x03, 0x01, 0x02, 0x03, 0x16, 0x7F])
        self.assertEqual(decode_frame(payload), [Attention(50), Blink(127)])
        self.assertEqual(parse_payload(payload).unknown_codes, (0x03, 0x90))

    def test_excode_prefix_is_skipped(self):
        payload = bytes([0x55, 0x55, 0x04, 0x20])
        decoded = parse_payload(payload)
        self.assertEqual(decoded.samples, [Attention(0x20)])
        self.assertEqual(decoded.excode_count, 2)
        self.assertFalse(decoded.truncated)

    def test_short_wave_value_is_unknown(self):
        self.assertEqual(decode_frame(bytes([0x80, 0x01, 0x05])), [])

    def test_empty_payload(self):
        self.assertEqual(decode_frame(b""), [])

    def test_deterministic(self):
        payload = bytes([0x02, 0x1A, 0x80, 0x02, 0x00, 0x10, 0x16, 0x40])
        self.assertEqual(decode_frame(payload), decode_frame(payload))


class TestTruncation(unittest.TestCase):
    def test_value_overruns_payload(self):
        payload = bytes([0x04, 0x32, 0x83, 0x18, 0x00, 0x00])
        with self.assertLogs("OpenMindset.decode", level="WARNING"):
            samples = decode_frame(payload)
        self.assertEqual(samples, [Attention(50)])
        self.assertTrue(parse_payload(payload).truncated)

    def test_missing_length_byte(self):
        decoded = parse_payload(bytes([0x05, 0x10, 0x80]))
        self.assertEqual(decoded.samples, [Meditation(16)])
        self.assertTrue(decoded.truncated)

    def test_dangling_excode(self):
        decoded = parse_payload(bytes([0x04, 0x01, 0x55]))
        self.assertEqual(decoded.samples, [Attention(1)])
        self.assertTrue(decoded.truncated)

    def test_missing_single_byte_value(self):
        self.assertTrue(parse_payload(bytes([0x04])).truncated)

    def test_strict_raises_with_partial_samples(self):
        with self.assertRaises(FrameTruncated) as ctx:
            decode_frame(bytes([0x16, 0x09, 0x80, 0x02, 0x00]), strict=True)
        self.assertEqual(ctx.exception.samples, [Blink(9)])


class TestDecodeRawdata(unittest.TestCase):
    def test_collects_series(self):
        payloads = [
            bytes([0x80, 0x02, 0x00, 0x01]),
            bytes([0x80, 0x02, 0xFF, 0xFF]),
            bytes([0x02, 0x00, 0x83, 0x18]) + BANDS_1_TO_8 + bytes([0x04, 0x30, 0x05, 0x40]),
        ]
        capture = decode_rawdata(payloads)
        self.assertTrue(capture.finalized)
        self.assertEqual(capture.wave, [1, -1])
        self.assertEqual(capture.delta, [1])
        self.assertEqual(capture.mid_gamma, [8])
        self.assertEqual(capture.attention, [0x30])
        self.assertEqual(capture.meditation, [0x40])
        self.assertEqual(capture.signal_quality, [0])
        self.assertEqual(capture.blink, [])


if __name__ == "__main__":
    unittest.main()
