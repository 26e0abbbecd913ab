"""Tests for binder debug state parsing."""

from fakes import BINDER_TEXT, CountingSource

from pylshal.binder import PidInfoCache, read_binder_debug, scan_binder_context, scan_pid_info


class TestScanBinderContext:
    """Tests for context gating."""

    def test_only_matching_context(self):
        lines = [
            "thread 1: l 02",
            "context binder",
            "thread 2: l 02",
            "context hwbinder",
            "thread 3: l 02",
            "thread 4: l 12",
            "context vndbinder",
            "thread 5: l 02",
        ]

        assert list(scan_binder_context(lines, "hwbinder")) == [
            "thread 3: l 02",
            "thread 4: l 12",
        ]

    def test_context_must_be_a_whole_line(self):
        lines = ["context hwbinder", "  context binder trailing", "node line"]

        assert list(scan_binder_context(lines, "hwbinder")) == [
            "  context binder trailing",
            "node line",
        ]

    def test_no_context_marker(self):
        assert list(scan_binder_context(["thread 1: l 02"], "hwbinder")) == []


class TestScanPidInfo:
    """Tests for scan_pid_info."""

    def test_sample_state(self):
        info = scan_pid_info(BINDER_TEXT.splitlines())

        assert info.ref_pids == {0x7B00: [200, 300, 4242]}
        assert info.thread_usage == 1
        assert info.thread_count == 3

    def test_calling_out_threads_excluded(self):
        lines = ["context hwbinder", "  thread 1: l 00", "  thread 2: l 10", "  thread 3: l 20"]

        info = scan_pid_info(lines)

        assert info.thread_usage == 0
        assert info.thread_count == 0

    def test_poll_threads_count_as_busy(self):
        lines = ["context hwbinder", "  thread 1: l 21", "  thread 2: l 11"]

        info = scan_pid_info(lines)

        assert info.thread_usage == 1
        assert info.thread_count == 2

    def test_references_accumulate_per_node(self):
        lines = [
            "context hwbinder",
            "  node 1: uabc c1f pri 0:139 hs 1 proc 10 11",
            "  node 2: uabd c1f pri 0:139 hs 1 proc 12",
            "  node 3: uabe c20 pri 0:139 hs 1",
        ]

        info = scan_pid_info(lines)

        assert info.ref_pids == {0x1F: [10, 11, 12]}

    def test_bad_pid_abandons_rest_of_line(self):
        lines = [
            "context hwbinder",
            "  node 1: uabc c1f pri 0:139 hs 1 proc 10 x 11",
            "  thread 1: l 02",
        ]

        info = scan_pid_info(lines)

        assert info.ref_pids == {0x1F: [10]}
        assert info.thread_count == 1

    def test_unknown_lines_ignored(self):
        lines = [
            "context hwbinder",
            "  buffer 1: 0 size 8:0:0 delivered",
            "  incoming transaction 12: from 3:4 to 5:6",
            "garbage",
        ]

        info = scan_pid_info(lines)

        assert info.ref_pids == {}
        assert info.thread_count == 0


class TestPidInfoCache:
    """Tests for PidInfoCache."""

    def test_reads_once_per_pid(self):
        source = CountingSource({100: BINDER_TEXT})
        cache = PidInfoCache(source)

        first = cache.get(100)
        second = cache.get(100)

        assert first is second
        assert first.thread_count == 3
        assert source.reads == {100: 1}

    def test_unreadable_is_cached_as_none(self):
        source = CountingSource({})
        cache = PidInfoCache(source)

        assert cache.get(5) is None
        assert cache.get(5) is None
        assert source.reads == {5: 1}


class TestReadBinderDebug:
    """Tests for reading the debug files."""

    def test_first_readable_root_wins(self, tmp_path):
        missing = tmp_path / "missing"
        present = tmp_path / "present"
        present.mkdir()
        (present / "100").write_text(BINDER_TEXT)

        lines = read_binder_debug(100, (missing, present))

        assert lines == BINDER_TEXT.splitlines()

    def test_unavailable(self, tmp_path):
        assert read_binder_debug(100, (tmp_path,)) is None
