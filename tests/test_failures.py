"""Tests for the failure recorder."""

import threading

from json_listener.failures import FAILED_FILES_LOG_NAME, FailureRecorder, read_failure_log


class TestFailureRecorder:
    """Tests for FailureRecorder."""

    def test_record_appends_absolute_path(self, log_dir, watch_dir):
        with FailureRecorder(log_dir) as recorder:
            recorder.record(watch_dir / "b.json")

        lines = (log_dir / FAILED_FILES_LOG_NAME).read_text().splitlines()
        assert lines == [str((watch_dir / "b.json").absolute())]

    def test_log_is_flushed_per_record(self, log_dir):
        """Test each entry is on disk before close."""
        recorder = FailureRecorder(log_dir)
        recorder.record("/data/x.json")

        assert read_failure_log(log_dir) == ["/data/x.json"]
        recorder.close()

    def test_appends_across_runs(self, log_dir):
        with FailureRecorder(log_dir) as first:
            first.record("/data/one.json")
        with FailureRecorder(log_dir) as second:
            second.record("/data/two.json")

        assert read_failure_log(log_dir) == ["/data/one.json", "/data/two.json"]

    def test_in_memory_set_sorted_by_path(self, log_dir):
        with FailureRecorder(log_dir) as recorder:
            for name in ["/data/c.json", "/data/a.json", "/data/b.json"]:
                recorder.record(name)

            assert recorder.failed_files() == ["/data/a.json", "/data/b.json", "/data/c.json"]
        # The file keeps arrival order
        assert read_failure_log(log_dir) == ["/data/c.json", "/data/a.json", "/data/b.json"]

    def test_duplicates_recorded_each_time(self, log_dir):
        with FailureRecorder(log_dir) as recorder:
            recorder.record("/data/a.json")
            recorder.record("/data/a.json")

            assert recorder.count("/data/a.json") == 2
            assert len(recorder) == 2
            assert "/data/a.json" in recorder
            assert "/data/z.json" not in recorder

    def test_record_after_close_keeps_memory_entry(self, log_dir):
        recorder = FailureRecorder(log_dir)
        recorder.close()

        recorder.record("/data/late.json")

        assert recorder.failed_files() == ["/data/late.json"]
        assert read_failure_log(log_dir) == []

    def test_creates_log_dir(self, temp_dir):
        with FailureRecorder(temp_dir / "new" / "logs") as recorder:
            assert recorder.log_file.exists()

    def test_concurrent_records(self, log_dir):
        """Test records from many threads are neither lost nor interleaved."""
        recorder = FailureRecorder(log_dir)

        def worker(n):
            for i in range(50):
                recorder.record(f"/data/t{n}-{i}.json")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        recorder.close()

        entries = read_failure_log(log_dir)
        assert len(entries) == 400
        assert len(set(entries)) == 400
        assert all(e.startswith("/data/t") and e.endswith(".json") for e in entries)
        assert recorder.failed_files() == sorted(entries)


class TestReadFailureLog:
    """Tests for read_failure_log."""

    def test_missing_log(self, temp_dir):
        assert read_failure_log(temp_dir) == []

    def test_accepts_file_path(self, log_dir):
        (log_dir / FAILED_FILES_LOG_NAME).write_text("/a.json\n\n/b.json\n")
        assert read_failure_log(log_dir / FAILED_FILES_LOG_NAME) == ["/a.json", "/b.json"]
