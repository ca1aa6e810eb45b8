import os
from datetime import timezone
from pathlib import Path

import pytest

from tokenledger.errors import FileScanError, LogDirectoryError
from tokenledger.scanner import (
    LogFile,
    discover_log_files,
    extract_project_path,
    scan_file,
)


def _log_file(path: "Path", project_path: "str" = "/proj") -> "LogFile":
    stat = path.stat()
    return LogFile(
        path=str(path),
        project_path=project_path,
        size=stat.st_size,
        modified=stat.st_mtime,
    )


class TestDiscover:
    def test_finds_jsonl_files_sorted(self, log_dir: "Path", write_log) -> "None":
        write_log(log_dir / "-Users-me-b" / "2.jsonl", {"a": 1})
        write_log(log_dir / "-Users-me-a" / "1.jsonl", {"a": 1})
        (log_dir / "-Users-me-a" / "notes.txt").write_text("ignored")

        files = discover_log_files(log_dir)

        assert [Path(f.path).name for f in files] == ["1.jsonl", "2.jsonl"]
        assert [f.project_path for f in files] == ["/-Users-me-a", "/-Users-me-b"]
        assert files[0].size > 0

    def test_empty_directory(self, log_dir: "Path") -> "None":
        assert discover_log_files(log_dir) == []

    def test_missing_directory_is_catastrophic(self, tmp_path: "Path") -> "None":
        with pytest.raises(LogDirectoryError):
            discover_log_files(tmp_path / "nope")

    @pytest.mark.skipif(os.geteuid() == 0, reason="root ignores permissions")
    def test_unreadable_directory_is_catastrophic(self, log_dir: "Path") -> "None":
        log_dir.chmod(0o000)
        try:
            with pytest.raises(LogDirectoryError):
                discover_log_files(log_dir)
        finally:
            log_dir.chmod(0o755)


class TestProjectPath:
    def test_nested_directories(self) -> "None":
        assert extract_project_path("/r/a/b/x.jsonl", "/r") == "/a/b"

    def test_file_at_root(self) -> "None":
        assert extract_project_path("/r/x.jsonl", "/r") == "/"


class TestScanFile:
    def test_reads_events_in_order(
        self, tmp_path: "Path", write_log, make_record
    ) -> "None":
        path = write_log(
            tmp_path / "a.jsonl",
            make_record(request_id="r1"),
            make_record(request_id="r2"),
        )
        result = scan_file(_log_file(path), tz=timezone.utc)

        assert [e.request_id for e in result.events] == ["r1", "r2"]
        assert result.lines_read == 2
        assert result.end_offset == path.stat().st_size
        assert result.events[0].source_offset == 0
        assert result.events[1].source_offset > 0
        assert result.events[0].project_path == "/proj"

    def test_counts_failures_and_filtered(
        self, tmp_path: "Path", write_log, make_record
    ) -> "None":
        path = write_log(
            tmp_path / "a.jsonl",
            "{broken",
            "",
            make_record(model="<synthetic>"),
            {"type": "summary", "summary": "no usage here"},
            make_record(request_id="ok"),
        )
        result = scan_file(_log_file(path), tz=timezone.utc)

        assert [e.request_id for e in result.events] == ["ok"]
        assert result.parse_failures == 1
        assert result.filtered == {"invalid_model": 1, "no_signal": 1}
        assert result.records_filtered == 2
        assert result.end_offset == path.stat().st_size

    def test_non_finite_token_fields_do_not_abort_the_file(
        self, tmp_path: "Path", write_log, make_record
    ) -> "None":
        path = write_log(
            tmp_path / "a.jsonl",
            make_record(request_id="good"),
            '{"requestId": "inf", "sessionId": "s", "model": "claude-3-haiku",'
            ' "usage": {"input_tokens": Infinity, "output_tokens": 1}}',
            '{"requestId": "nan", "sessionId": "s", "model": "claude-3-haiku",'
            ' "usage": {"input_tokens": NaN, "output_tokens": 1e400}}',
        )

        result = scan_file(_log_file(path), tz=timezone.utc)

        assert [e.request_id for e in result.events] == ["good", "inf", "nan"]
        assert result.events[1].input_tokens == 0
        assert result.events[1].output_tokens == 1
        assert result.events[2].output_tokens == 0
        assert result.parse_failures == 0
        assert result.end_offset == path.stat().st_size

    def test_resumes_from_offset(
        self, tmp_path: "Path", write_log, make_record
    ) -> "None":
        path = write_log(tmp_path / "a.jsonl", make_record(request_id="r1"))
        first = scan_file(_log_file(path))
        write_log(path, make_record(request_id="r2"))

        second = scan_file(_log_file(path), first.end_offset)

        assert [e.request_id for e in second.events] == ["r2"]
        assert second.start_offset == first.end_offset
        assert second.events[0].source_offset == first.end_offset

    def test_partial_trailing_line_is_left_unread(
        self, tmp_path: "Path", write_log, make_record
    ) -> "None":
        path = write_log(tmp_path / "a.jsonl", make_record(request_id="r1"))
        complete = path.stat().st_size
        with open(path, "a", encoding="utf-8") as fh:
            fh.write('{"requestId": "r2", "sessionId": ')

        result = scan_file(_log_file(path))

        assert [e.request_id for e in result.events] == ["r1"]
        assert result.parse_failures == 0
        assert result.end_offset == complete

    def test_complete_trailing_line_without_newline_is_read(
        self, tmp_path: "Path"
    ) -> "None":
        path = tmp_path / "a.jsonl"
        path.write_text(
            '{"requestId": "r1", "sessionId": "s", "model": "claude-3-haiku"}'
        )

        result = scan_file(_log_file(path))

        assert [e.request_id for e in result.events] == ["r1"]
        assert result.end_offset == path.stat().st_size

    def test_missing_file_raises(self, tmp_path: "Path") -> "None":
        log_file = LogFile(
            path=str(tmp_path / "gone.jsonl"),
            project_path="/proj",
            size=10,
            modified=0.0,
        )
        with pytest.raises(FileScanError) as excinfo:
            scan_file(log_file)
        assert excinfo.value.path == log_file.path
