import tempfile
import unittest
from pathlib import Path
from unittest import mock

import pipeline
from errors import (
    FrameExtractionError,
    FrameUpscaleError,
    MergeError,
    PipelineCancelled,
    PipelineError,
    ProbeError,
)
from media import VideoMetadata
from models import PipelineState, UpscaleJob
from toolchain import CancelToken, Toolchain

TOOLCHAIN = Toolchain(
    ffmpeg="ffmpeg",
    ffprobe="ffprobe",
    realesrgan_binary=Path("/opt/realesrgan-ncnn-vulkan"),
    model_path=None,
)


class FakeStages:
    """Stand-ins for the ffmpeg/Real-ESRGAN stages that only touch the filesystem."""

    def __init__(self, metadata, has_audio=False):
        self.metadata = metadata
        self.has_audio = has_audio
        self.extract_calls = []
        self.scratch_dirs = []
        self.segments_created = []
        self.merged_segments = None
        self.merge_audio = None

    def get_video_metadata(self, ffprobe_bin, input_video, *, cancel=None):
        return self.metadata

    def has_audio_stream(self, ffprobe_bin, input_video, *, cancel=None):
        return self.has_audio

    def extract_audio(self, ffmpeg_bin, input_video, temp_dir, *, cancel=None):
        target = temp_dir / "audio_track.mka"
        target.write_bytes(b"audio")
        return target

    def extract_frames(self, ffmpeg_bin, frames_dir, input_video, *, start_frame, frame_count,
                       scale_multiplier, metadata, cancel=None):
        self.extract_calls.append((start_frame, frame_count))
        self.scratch_dirs.append(frames_dir)
        frames = []
        for index in range(1, frame_count + 1):
            frame = frames_dir / f"frame_{index:06d}.png"
            frame.write_bytes(b"png")
            frames.append(frame)
        return frames

    def upscale_frames(self, toolchain, frames, frames_dir, job, *, progress, workers=None,
                       gpu_id=0, jobs=None, cancel=None):
        for frame in frames:
            (frames_dir / f"upscaled_{frame.name}").write_bytes(b"png")
            progress.frame_done()
        return []

    def reassemble_video(self, ffmpeg_bin, frames_dir, output_video, *, framerate, codec="h264",
                         preset="medium", crf=18, cancel=None):
        output_video.write_bytes(b"segment")
        self.segments_created.append(output_video)
        return output_video

    def merge_segments(self, ffmpeg_bin, segment_paths, save_path, *, manifest_path, audio_path,
                       audio_bitrate="192k", cancel=None):
        self.merged_segments = list(segment_paths)
        self.merge_audio = audio_path
        save_path.write_bytes(b"final")
        return save_path

    def patches(self):
        names = (
            "get_video_metadata",
            "has_audio_stream",
            "extract_audio",
            "extract_frames",
            "upscale_frames",
            "reassemble_video",
            "merge_segments",
        )
        return [mock.patch(f"pipeline.{name}", side_effect=getattr(self, name)) for name in names]


class PipelineTestCase(unittest.TestCase):
    def setUp(self):
        self._temp = tempfile.TemporaryDirectory()
        self.root = Path(self._temp.name)
        self.work_dir = self.root / "work"
        self.source = self.root / "clip.mp4"
        self.source.write_bytes(b"video")
        self.events = []

    def tearDown(self):
        self._temp.cleanup()

    def make_pipeline(self, **config):
        config.setdefault("work_dir", self.work_dir)
        config.setdefault("batch_size", 4)
        return pipeline.UpscalePipeline(
            TOOLCHAIN,
            pipeline.PipelineConfig(**config),
            progress_sink=lambda job, percent, label: self.events.append((percent, label)),
        )

    def make_job(self, **kwargs):
        return UpscaleJob.from_path(self.source, **kwargs)

    def run_with(self, stages, job, runner=None, cancel=None):
        runner = runner or self.make_pipeline()
        patches = stages.patches()
        for patch in patches:
            patch.start()
        try:
            return runner.run(job, cancel)
        finally:
            for patch in patches:
                patch.stop()


class TestPipelineRun(PipelineTestCase):
    def test_ten_frames_make_three_batches_merged_in_order(self):
        stages = FakeStages(VideoMetadata(total_frames=10, fps=30, width=64, height=64))
        job = self.make_job(scale=2)

        output = self.run_with(stages, job)

        self.assertEqual(output, job.output_path)
        self.assertTrue(output.exists())
        self.assertEqual(stages.extract_calls, [(0, 4), (4, 4), (8, 2)])
        self.assertEqual(job.total_batches, 3)
        self.assertEqual(len(stages.segments_created), 3)
        self.assertEqual(stages.merged_segments, stages.segments_created)
        self.assertIsNone(stages.merge_audio)
        self.assertFalse(job.has_audio)
        self.assertEqual(job.fps, 30)
        self.assertEqual(job.state, PipelineState.DONE)

    def test_segment_names_sort_in_batch_order(self):
        stages = FakeStages(VideoMetadata(total_frames=40, fps=30, width=64, height=64))
        self.run_with(stages, self.make_job())

        self.assertEqual(len(stages.merged_segments), 10)
        self.assertEqual(stages.merged_segments, sorted(stages.merged_segments))

    def test_scratch_and_temp_dirs_are_removed(self):
        stages = FakeStages(VideoMetadata(total_frames=10, fps=30, width=64, height=64))
        self.run_with(stages, self.make_job())

        self.assertEqual(len(set(stages.scratch_dirs)), 3)
        for scratch_dir in stages.scratch_dirs:
            self.assertFalse(scratch_dir.exists())
        self.assertEqual(list(self.work_dir.iterdir()), [])

    def test_keep_temp_leaves_workspace(self):
        stages = FakeStages(VideoMetadata(total_frames=4, fps=30, width=64, height=64))
        self.run_with(stages, self.make_job(), runner=self.make_pipeline(keep_temp=True))

        self.assertEqual(len(list(self.work_dir.iterdir())), 1)

    def test_audio_is_passed_to_merge_when_present(self):
        stages = FakeStages(VideoMetadata(total_frames=5, fps=25, width=64, height=64), has_audio=True)
        job = self.make_job()
        self.run_with(stages, job)

        self.assertTrue(job.has_audio)
        self.assertEqual(stages.merge_audio.name, "audio_track.mka")

    def test_explicit_fps_is_kept(self):
        stages = FakeStages(VideoMetadata(total_frames=4, fps=30, width=64, height=64))
        job = self.make_job(fps=24)
        self.run_with(stages, job)
        self.assertEqual(job.fps, 24)

    def test_progress_is_monotonic_and_ends_at_100(self):
        stages = FakeStages(VideoMetadata(total_frames=10, fps=30, width=64, height=64))
        job = self.make_job()
        self.run_with(stages, job)

        percents = [percent for percent, _label in self.events]
        self.assertEqual(percents, sorted(percents))
        self.assertEqual(percents[0], 5.0)
        self.assertEqual(percents[-1], 100.0)
        self.assertEqual(job.percent, 100.0)
        for checkpoint in (10.0, 15.0, 85.0, 90.0, 95.0):
            self.assertIn(checkpoint, percents)

    def test_missing_input_raises(self):
        job = UpscaleJob.from_path(self.root / "missing.mp4")
        with self.assertRaises(FileNotFoundError):
            self.make_pipeline().run(job)
        self.assertEqual(job.state, PipelineState.FAILED)

    def test_output_equal_to_input_raises(self):
        job = self.make_job(output_path=self.source)
        with self.assertRaises(ValueError):
            self.make_pipeline().run(job)


class TestPipelineFailures(PipelineTestCase):
    def test_probe_failure_is_wrapped_with_stage(self):
        stages = FakeStages(None)
        with mock.patch.object(stages, "get_video_metadata", side_effect=ProbeError("bad json")):
            with self.assertRaises(PipelineError) as ctx:
                self.run_with(stages, self.make_job())

        self.assertEqual(ctx.exception.stage, "getting video details")
        self.assertIsInstance(ctx.exception.cause, ProbeError)
        self.assertIsInstance(ctx.exception.__cause__, ProbeError)

    def test_upscale_failure_stops_remaining_batches(self):
        stages = FakeStages(VideoMetadata(total_frames=12, fps=30, width=64, height=64))
        calls = []
        upscale_ok = stages.upscale_frames

        def failing_upscale(toolchain, frames, frames_dir, job, **kwargs):
            calls.append(job.current_batch)
            if job.current_batch == 2:
                raise FrameUpscaleError("errors occurred during upscaling")
            return upscale_ok(toolchain, frames, frames_dir, job, **kwargs)

        job = self.make_job()
        with mock.patch.object(stages, "upscale_frames", side_effect=failing_upscale):
            with self.assertRaises(PipelineError) as ctx:
                self.run_with(stages, job)

        self.assertEqual(ctx.exception.stage, "upscaling frames")
        self.assertEqual(calls, [1, 2])
        self.assertEqual(len(stages.extract_calls), 2)
        self.assertIsNone(stages.merged_segments)
        self.assertFalse(job.output_path.exists())
        self.assertEqual(job.state, PipelineState.FAILED)
        self.assertEqual(list(self.work_dir.iterdir()), [])

    def test_extraction_failure_fails_job(self):
        stages = FakeStages(VideoMetadata(total_frames=8, fps=30, width=64, height=64))
        with mock.patch.object(stages, "extract_frames", side_effect=FrameExtractionError("exit 1")):
            with self.assertRaises(PipelineError) as ctx:
                self.run_with(stages, self.make_job())
        self.assertEqual(ctx.exception.stage, "extracting frames")

    def test_cancel_before_next_batch(self):
        stages = FakeStages(VideoMetadata(total_frames=12, fps=30, width=64, height=64))
        cancel = CancelToken()
        reassemble = stages.reassemble_video

        def reassemble_then_cancel(*args, **kwargs):
            cancel.cancel()
            return reassemble(*args, **kwargs)

        job = self.make_job()
        with mock.patch.object(stages, "reassemble_video", side_effect=reassemble_then_cancel):
            with self.assertRaises(PipelineCancelled):
                self.run_with(stages, job, cancel=cancel)

        self.assertEqual(stages.extract_calls, [(0, 4)])
        self.assertEqual(job.state, PipelineState.FAILED)


class TestProcessJob(PipelineTestCase):
    def test_success_status(self):
        stages = FakeStages(VideoMetadata(total_frames=4, fps=30, width=64, height=64))
        job = self.make_job()
        runner = self.make_pipeline()
        with mock.patch.object(runner, "run", side_effect=lambda j, c=None: self.run_with(stages, j)):
            status = runner.process_job(job)

        self.assertEqual(status, f"Success: {job.output_path}")
        self.assertEqual(job.result, status)

    def test_failure_status_carries_reason(self):
        runner = self.make_pipeline()
        error = PipelineError("merging final video", MergeError("concat failed"))
        with mock.patch.object(runner, "run", side_effect=error):
            status = runner.process_job(self.make_job())

        self.assertEqual(status, "Failed: merging final video: concat failed")

    def test_process_files_runs_each_file(self):
        second = self.root / "second.mp4"
        second.write_bytes(b"video")
        runner = self.make_pipeline()
        seen = []

        def fake_process(job, cancel=None):
            seen.append(job.input_path.name)
            return "Success: x" if job.input_path.name == "clip.mp4" else "Failed: y"

        with mock.patch.object(runner, "process_job", side_effect=fake_process):
            results = runner.process_files([self.source, second], scale=2)

        self.assertEqual(seen, ["clip.mp4", "second.mp4"])
        self.assertEqual(results, [
            (str(self.source.resolve()), "Success: x"),
            (str(second.resolve()), "Failed: y"),
        ])

    def test_repeated_input_keeps_every_status(self):
        runner = self.make_pipeline()
        statuses = iter(["Success: x", "Failed: y"])

        with mock.patch.object(runner, "process_job", side_effect=lambda job, cancel=None: next(statuses)):
            results = runner.process_jobs([self.make_job(), self.make_job()])

        self.assertEqual([status for _input, status in results], ["Success: x", "Failed: y"])

    def test_cancelled_token_fails_pending_jobs(self):
        cancel = CancelToken()
        cancel.cancel()
        results = self.make_pipeline().process_files([self.source], cancel=cancel)
        self.assertEqual(results, [(str(self.source.resolve()), "Failed: Job cancelled.")])


if __name__ == "__main__":
    unittest.main()
