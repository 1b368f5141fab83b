import tempfile
import unittest
from pathlib import Path

import models


class TestPlanBatches(unittest.TestCase):
    def test_batches_partition_all_frames_in_order(self):
        for total, size in ((10, 4), (300, 150), (301, 150), (1, 150), (149, 150), (7, 1)):
            with self.subTest(total=total, size=size):
                batches = models.plan_batches(total, size)

                self.assertEqual(len(batches), -(-total // size))
                self.assertEqual(len(batches), models.count_batches(total, size))
                covered = [frame for batch in batches for frame in range(batch.start, batch.end)]
                self.assertEqual(covered, list(range(total)))
                self.assertTrue(all(batch.count == size for batch in batches[:-1]))
                self.assertEqual(batches[-1].count, total - size * (len(batches) - 1))
                self.assertEqual([batch.index for batch in batches], list(range(1, len(batches) + 1)))

    def test_ten_frames_in_batches_of_four(self):
        batches = models.plan_batches(10, 4)
        self.assertEqual([(b.start, b.count) for b in batches], [(0, 4), (4, 4), (8, 2)])

    def test_batch_ids_are_unique(self):
        batches = models.plan_batches(1000, 10)
        self.assertEqual(len({batch.batch_id for batch in batches}), len(batches))

    def test_empty_video_has_no_batches(self):
        self.assertEqual(models.plan_batches(0, 150), [])

    def test_invalid_batch_size_raises(self):
        with self.assertRaises(ValueError):
            models.plan_batches(10, 0)

    def test_scratch_and_segment_paths_derive_from_batch(self):
        batch = models.Batch(index=3, start=300, count=150, batch_id="abc")
        root = Path("/tmp/job")
        self.assertEqual(batch.scratch_dir(root), root / "batch_abc")
        self.assertEqual(batch.segment_path(root), root / "segment_00003_abc.mp4")


class TestUpscaleJob(unittest.TestCase):
    def test_from_path_defaults_output_next_to_input(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            source = Path(temp_dir) / "Clip.MKV"
            source.write_bytes(b"12345")

            job = models.UpscaleJob.from_path(source, scale=2, model="realesr-animevideov3")

            self.assertEqual(job.output_path, (Path(temp_dir) / "Clip_upscaled_2x.mp4").resolve())
            self.assertEqual(job.extension, ".mkv")
            self.assertEqual(job.size_bytes, 5)
            self.assertEqual(job.name, "Clip.MKV")
            self.assertEqual(job.state, models.PipelineState.INIT)
            self.assertEqual(job.fps, 0)
            self.assertFalse(job.has_audio)

    def test_from_path_honors_output_dir(self):
        output_dir = Path("/tmp/upscaled")
        job = models.UpscaleJob.from_path(Path("/videos/a.mp4"), output_dir=output_dir, scale=4)
        self.assertEqual(job.output_path, (output_dir / "a_upscaled_4x.mp4").resolve())


if __name__ == "__main__":
    unittest.main()
