import tempfile
import unittest
from pathlib import Path

import media
from errors import ProbeParseError, StageFailureError
from fakes import FakeRunner
from toolchain import CommandOutcome

FFMPEG = Path("/opt/icecale/ffmpeg")
FFPROBE = Path("/opt/icecale/ffprobe")


class TestParseFramerate(unittest.TestCase):
    def test_rational(self):
        self.assertAlmostEqual(media.parse_framerate("30000/1001"), 30000 / 1001)
        self.assertEqual(media.parse_framerate("25/1"), 25.0)

    def test_plain_decimal(self):
        self.assertEqual(media.parse_framerate("29.97"), 29.97)

    def test_zero_denominator_is_unknown(self):
        self.assertEqual(media.parse_framerate("0/0"), 0.0)
        self.assertEqual(media.parse_framerate("24/0"), 0.0)

    def test_unknown_markers(self):
        self.assertEqual(media.parse_framerate("N/A"), 0.0)
        self.assertEqual(media.parse_framerate(""), 0.0)

    def test_garbage_raises_value_error(self):
        with self.assertRaises(ValueError):
            media.parse_framerate("fast")


class TestTokenParsing(unittest.TestCase):
    def test_unknown_tokens_are_zero(self):
        for token in ("N/A", ""):
            self.assertEqual(media.parse_count(token), 0)
            self.assertEqual(media.parse_seconds(token), 0.0)

    def test_numbers(self):
        self.assertEqual(media.parse_count("1920"), 1920)
        self.assertEqual(media.parse_seconds("4.000000"), 4.0)


class TestResolveTotalFrames(unittest.TestCase):
    def test_counted_frames_win(self):
        self.assertEqual(media.resolve_total_frames(120, 100, 4.0, 30.0), 120)

    def test_declared_frames_when_count_missing(self):
        self.assertEqual(media.resolve_total_frames(0, 100, 4.0, 30.0), 100)

    def test_duration_times_fps_fallback(self):
        self.assertEqual(media.resolve_total_frames(-1, -1, 4.0, 30.0), 120)
        self.assertEqual(media.resolve_total_frames(0, 0, 10.01, 29.97), 300)

    def test_unknown(self):
        self.assertEqual(media.resolve_total_frames(0, 0, 0.0, 0.0), 0)
        self.assertEqual(media.resolve_total_frames(0, 0, 4.0, 0.0), 0)


class TestParseProbeOutput(unittest.TestCase):
    def test_positional_fields(self):
        info = media.parse_probe_output("120,100,1920,1080,30000/1001,4.004000\n")

        self.assertEqual(info.width, 1920)
        self.assertEqual(info.height, 1080)
        self.assertEqual(info.fps_raw, "30000/1001")
        self.assertAlmostEqual(info.fps, 29.97002997)
        self.assertEqual(info.duration_seconds, 4.004)
        self.assertEqual(info.total_frames, 120)

    def test_keyed_fields_in_ffprobe_order(self):
        line = (
            "width=1280,height=720,avg_frame_rate=25/1,duration=N/A,"
            "nb_frames=N/A,nb_read_frames=250"
        )
        info = media.parse_probe_output(line)

        self.assertEqual((info.width, info.height), (1280, 720))
        self.assertEqual(info.fps, 25.0)
        self.assertEqual(info.duration_seconds, 0.0)
        self.assertEqual(info.total_frames, 250)

    def test_raw_rate_kept_verbatim_even_when_unknown(self):
        info = media.parse_probe_output("10,10,640,480,0/0,N/A")
        self.assertEqual(info.fps, 0.0)
        self.assertEqual(info.fps_raw, "0/0")

    def test_unknown_counts_fall_back_to_duration(self):
        info = media.parse_probe_output("N/A,N/A,640,480,30/1,4.0")
        self.assertEqual(info.total_frames, 120)

    def test_first_line_only(self):
        info = media.parse_probe_output("\n10,10,320,240,10/1,1.0\n20,20,640,480,10/1,2.0\n")
        self.assertEqual(info.width, 320)

    def test_too_few_fields(self):
        with self.assertRaises(ProbeParseError):
            media.parse_probe_output("1920,1080,30/1")

    def test_empty_output(self):
        with self.assertRaises(ProbeParseError):
            media.parse_probe_output("")

    def test_zero_dimensions_abort(self):
        with self.assertRaises(ProbeParseError):
            media.parse_probe_output("10,10,N/A,1080,30/1,1.0")

    def test_non_numeric_field(self):
        with self.assertRaises(ProbeParseError) as ctx:
            media.parse_probe_output("10,10,wide,1080,30/1,1.0")
        self.assertIn("wide", str(ctx.exception))

    def test_keyed_output_missing_field(self):
        with self.assertRaises(ProbeParseError):
            media.parse_probe_output("width=1,height=1,avg_frame_rate=1/1,duration=1,nb_frames=1,codec=h264")


class TestProbeVideo(unittest.TestCase):
    def test_builds_single_structured_query(self):
        runner = FakeRunner({"ffprobe": CommandOutcome(0, "96,96,64,64,10/1,9.6\n")})

        info = media.probe_video(FFPROBE, Path("/videos/in.mp4"), runner)

        self.assertEqual(info.total_frames, 96)
        cmd = runner.calls[0]
        self.assertIn("-count_frames", cmd)
        self.assertIn(
            "stream=nb_read_frames,nb_frames,width,height,avg_frame_rate,duration", cmd
        )
        self.assertEqual(cmd[-1], "/videos/in.mp4")

    def test_probe_failure_is_stage_failure(self):
        runner = FakeRunner({"ffprobe": CommandOutcome(1, "moov atom not found")})
        with self.assertRaises(StageFailureError) as ctx:
            media.probe_video(FFPROBE, Path("/videos/broken.mp4"), runner)
        self.assertIn("moov atom not found", str(ctx.exception))


class TestExtractAudio(unittest.TestCase):
    def test_stream_copy_success(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            audio_path = Path(temp_dir) / "audio.mka"

            def write_audio(cmd):
                audio_path.write_bytes(b"opus")
                return CommandOutcome(0, "")

            runner = FakeRunner({"ffmpeg": write_audio})
            result = media.extract_audio(FFMPEG, Path("/videos/in.mp4"), audio_path, runner)

            self.assertEqual(result, audio_path)
            cmd = runner.calls[0]
            self.assertIn("-vn", cmd)
            self.assertEqual(cmd[cmd.index("-c:a") + 1], "copy")

    def test_failure_means_no_audio(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            audio_path = Path(temp_dir) / "audio.mka"
            runner = FakeRunner({"ffmpeg": CommandOutcome(1, "matches no streams")})

            result = media.extract_audio(FFMPEG, Path("/videos/in.mp4"), audio_path, runner)

        self.assertIsNone(result)

    def test_empty_file_means_no_audio(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            audio_path = Path(temp_dir) / "audio.mka"

            def write_empty(cmd):
                audio_path.touch()
                return CommandOutcome(0, "")

            result = media.extract_audio(
                FFMPEG, Path("/videos/in.mp4"), audio_path, FakeRunner({"ffmpeg": write_empty})
            )

        self.assertIsNone(result)


class TestExtractFrames(unittest.TestCase):
    def test_frame_accurate_zero_padded_pattern(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            frames_dir = Path(temp_dir) / "frames_raw"
            runner = FakeRunner()

            media.extract_frames(FFMPEG, Path("/videos/in.mp4"), frames_dir, runner)

            self.assertTrue(frames_dir.is_dir())
            cmd = runner.calls[0]
            self.assertEqual(cmd[cmd.index("-fps_mode") + 1], "passthrough")
            self.assertEqual(cmd[-1], str(frames_dir / "frame_%08d.png"))

    def test_failure_aborts(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            runner = FakeRunner({"ffmpeg": CommandOutcome(1, "Invalid data found")})
            with self.assertRaises(StageFailureError) as ctx:
                media.extract_frames(FFMPEG, Path("/videos/in.mp4"), Path(temp_dir), runner)

        self.assertEqual(ctx.exception.stage, "Frame extraction")
        self.assertIn("Invalid data found", ctx.exception.output)

    def test_zero_padding_keeps_lexicographic_order(self):
        names = [f"frame_{index:08d}.png" for index in range(1, 1001)]
        shuffled = list(reversed(names))
        self.assertEqual(sorted(shuffled), names)


class TestScaleFilter(unittest.TestCase):
    def test_filter_chain(self):
        self.assertEqual(
            media.build_scale_filter(),
            "scale='min(2560,iw)':'min(1440,ih)':force_original_aspect_ratio=decrease"
            ",scale=trunc(iw/2)*2:trunc(ih/2)*2",
        )

    def test_uhd_is_capped_to_1440p(self):
        self.assertEqual(media.capped_dimensions(3840, 2160), (2560, 1440))

    def test_under_cap_is_untouched(self):
        self.assertEqual(media.capped_dimensions(1000, 1000), (1000, 1000))

    def test_odd_dimensions_round_down_to_even(self):
        self.assertEqual(media.capped_dimensions(1001, 999), (1000, 998))

    def test_aspect_preserved_and_even(self):
        for width, height in [(3840, 1600), (2880, 1920), (7680, 4320), (1440, 2560), (2560, 1080)]:
            out_width, out_height = media.capped_dimensions(width, height)
            self.assertLessEqual(out_width, 2560)
            self.assertLessEqual(out_height, 1440)
            self.assertEqual(out_width % 2, 0)
            self.assertEqual(out_height % 2, 0)
            self.assertAlmostEqual(out_width / out_height, width / height, delta=0.01)


class TestAssembleCommand(unittest.TestCase):
    def test_with_audio_maps_and_copies_audio(self):
        cmd = media.build_assemble_command(
            FFMPEG,
            Path("/work/frames_upscaled"),
            Path("/videos/out.mp4"),
            fps_raw="30000/1001",
            audio_path=Path("/work/audio.mka"),
        )

        self.assertEqual(cmd[cmd.index("-framerate") + 1], "30000/1001")
        self.assertIn("/work/frames_upscaled/frame_%08d.png", cmd)
        self.assertIn("/work/audio.mka", cmd)
        self.assertIn("0:v:0", cmd)
        self.assertIn("1:a:0", cmd)
        self.assertEqual(cmd[cmd.index("-c:a") + 1], "copy")
        self.assertEqual(cmd[cmd.index("-c:v") + 1], "h264_nvenc")
        self.assertEqual(cmd[cmd.index("-pix_fmt") + 1], "yuv420p")
        self.assertEqual(cmd[cmd.index("-vf") + 1], media.build_scale_filter())
        self.assertEqual(cmd[-1], "/videos/out.mp4")

    def test_without_audio_omits_map_and_audio_args(self):
        cmd = media.build_assemble_command(
            FFMPEG,
            Path("/work/frames_upscaled"),
            Path("/videos/out.mp4"),
            fps_raw="25/1",
            audio_path=None,
        )

        self.assertNotIn("-map", cmd)
        self.assertNotIn("-c:a", cmd)
        self.assertEqual(cmd.count("-i"), 1)

    def test_empty_framerate_defaults_to_30(self):
        cmd = media.build_assemble_command(
            FFMPEG, Path("/work/up"), Path("/videos/out.mp4"), fps_raw="", audio_path=None
        )
        self.assertEqual(cmd[cmd.index("-framerate") + 1], "30")

    def test_unusable_framerates_default_to_30(self):
        for raw in ("N/A", "0/0", "24/0", "garbage"):
            self.assertEqual(media.input_framerate(raw), "30")

    def test_usable_framerate_passes_through_verbatim(self):
        self.assertEqual(media.input_framerate("30000/1001"), "30000/1001")
        self.assertEqual(media.input_framerate(" 25 "), "25")

    def test_configured_default_framerate(self):
        cmd = media.build_assemble_command(
            FFMPEG,
            Path("/work/up"),
            Path("/videos/out.mp4"),
            fps_raw="N/A",
            audio_path=None,
            default_framerate="24",
        )
        self.assertEqual(cmd[cmd.index("-framerate") + 1], "24")

    def test_encoder_failure_is_fatal(self):
        runner = FakeRunner({"ffmpeg": CommandOutcome(1, "No NVENC capable devices found")})
        with self.assertRaises(StageFailureError) as ctx:
            media.assemble_video(
                FFMPEG,
                Path("/work/up"),
                Path("/videos/out.mp4"),
                fps_raw="24/1",
                audio_path=None,
                runner=runner,
            )
        self.assertIn("NVENC", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
