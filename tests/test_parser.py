"""Tests for parsing model replies."""


class TestStatisticsDialect:
    """Replies that start with a statistics line."""

    def test_counts_taken_verbatim(self):
        """Test that the statistics line is authoritative for the counts."""
        from review_copilot.review.parser import parse_review

        reply = "\n".join(
            [
                "statistics: critical=1 normal=2 suggestion=3",
                "app/db.py:25 SQL injection risk, use a parameterized query",
                "12: [normal] Variable name does not follow the naming convention",
            ]
        )

        parsed = parse_review(reply, default_file_path="app/db.py")

        assert parsed.dialect == "statistics"
        assert parsed.counts.critical == 1
        assert parsed.counts.normal == 2
        assert parsed.counts.suggestion == 3
        assert len(parsed.critical_items) == 1
        item = parsed.critical_items[0]
        assert item.file_path == "app/db.py"
        assert item.line == 25
        assert item.line_end is None
        assert item.content == "SQL injection risk, use a parameterized query"

    def test_critical_item_with_range(self):
        """Test that path:start-end lines keep the range."""
        from review_copilot.review.parser import parse_review

        reply = "statistics: critical=1 normal=0 suggestion=0\nsrc/auth.py:10-14 token is logged"

        item = parse_review(reply).critical_items[0]

        assert item.line == 10
        assert item.line_end == 14

    def test_degenerate_range_dropped(self):
        """Test that an end line before the start line is ignored."""
        from review_copilot.review.parser import parse_review

        reply = "statistics: critical=1 normal=0 suggestion=0\nsrc/auth.py:10-3 bad range"

        assert parse_review(reply).critical_items[0].line_end is None

    def test_chinese_statistics_line(self):
        """Test the Chinese form of the statistics line."""
        from review_copilot.review.parser import parse_review

        reply = "统计：严重=2，一般=0，建议=1\napi/views.py:8 未校验权限"

        parsed = parse_review(reply)

        assert parsed.dialect == "statistics"
        assert parsed.counts.critical == 2
        assert parsed.counts.suggestion == 1
        assert parsed.critical_items[0].file_path == "api/views.py"

    def test_statistics_line_case_insensitive_and_markdown(self):
        """Test a bold, capitalized statistics line."""
        from review_copilot.review.parser import parse_review

        parsed = parse_review("**Statistics**: Critical=0, Normal=4, Suggestion=0")

        assert parsed.counts.normal == 4

    def test_critical_items_capped(self):
        """Test that at most max_critical_items items are extracted."""
        from review_copilot.review.parser import parse_review

        lines = ["statistics: critical=15 normal=0 suggestion=0"]
        lines += [f"app/mod.py:{n} problem {n}" for n in range(1, 16)]

        parsed = parse_review("\n".join(lines), max_critical_items=10)

        assert parsed.counts.critical == 15
        assert len(parsed.critical_items) == 10
        assert parsed.critical_items[-1].line == 10

    def test_host_and_port_is_not_a_location(self):
        """Test that host:port text is not read as a file and line."""
        from review_copilot.review.parser import parse_review

        reply = "\n".join(
            [
                "statistics: critical=1 normal=0 suggestion=0",
                "localhost:8080 is hardcoded",
                "config/settings.py:4 hardcoded host",
            ]
        )

        parsed = parse_review(reply)

        assert [item.file_path for item in parsed.critical_items] == ["config/settings.py"]
        assert parsed.critical_items[0].line == 4

    def test_zero_statistics_is_clean(self):
        """Test an all-zero statistics line with nothing else."""
        from review_copilot.review.parser import parse_review

        parsed = parse_review("statistics: critical=0 normal=0 suggestion=0\nLGTM!")

        assert parsed.dialect == "statistics"
        assert parsed.counts.is_empty
        assert parsed.critical_items == []


class TestLegacyDialect:
    """Replies with one <line>: [severity] entry per issue."""

    def test_single_critical_line(self):
        """Test that a lone critical entry counts and becomes an item."""
        from review_copilot.review.parser import parse_review

        parsed = parse_review(
            "12: [critical] possible null dereference", default_file_path="app/user.py"
        )

        assert parsed.dialect == "legacy"
        assert parsed.counts.critical == 1
        assert parsed.counts.normal == 0
        assert len(parsed.critical_items) == 1
        item = parsed.critical_items[0]
        assert item.file_path == "app/user.py"
        assert item.line == 12
        assert item.content == "possible null dereference"

    def test_counts_by_tag(self):
        """Test counting entries by their severity tag."""
        from review_copilot.review.parser import parse_review

        reply = "\n".join(
            [
                "3: [normal] magic number",
                "7-9: [suggestion] extract a helper",
                "20: [critical] unchecked input",
                "21: [建议] 可以简化",
            ]
        )

        parsed = parse_review(reply, default_file_path="a.py")

        assert parsed.counts.critical == 1
        assert parsed.counts.normal == 1
        assert parsed.counts.suggestion == 2
        assert [item.line for item in parsed.items] == [3, 7, 20, 21]
        assert parsed.items[1].line_end == 9

    def test_keyword_inference_without_tag(self):
        """Test severity inference from keywords when there is no tag."""
        from review_copilot.review.parser import infer_severity
        from review_copilot.models.findings import Severity

        assert infer_severity("security hole in login") is Severity.CRITICAL
        assert infer_severity("consider renaming") is Severity.SUGGESTION
        assert infer_severity("long function") is Severity.NORMAL

    def test_multiline_continuation(self):
        """Test that following lines extend the current entry."""
        from review_copilot.review.parser import parse_review

        reply = "5: [normal] loop is quadratic\nuse a set instead\n\n9: [normal] typo"

        parsed = parse_review(reply, default_file_path="a.py")

        assert parsed.items[0].content == "loop is quadratic\nuse a set instead"
        assert parsed.items[1].content == "typo"

    def test_file_headings_switch_path(self):
        """Test that batch replies attribute entries to the file heading above them."""
        from review_copilot.review.parser import parse_review

        reply = "\n".join(
            [
                "## app/models.py",
                "4: [critical] missing migration",
                "## Notes",
                "File: app/views.py",
                "11: [normal] unused import",
            ]
        )

        parsed = parse_review(reply)

        assert [item.file_path for item in parsed.items] == ["app/models.py", "app/views.py"]
        assert parsed.critical_items[0].file_path == "app/models.py"

    def test_lgtm(self):
        """Test that LGTM! alone means zero issues."""
        from review_copilot.review.parser import parse_review

        parsed = parse_review("LGTM!")

        assert parsed.counts.is_empty
        assert not parsed.is_uncertain


class TestUnrecognizedReplies:
    """Replies matching neither dialect."""

    def test_free_text_counts_as_zero(self):
        """Test that prose yields zero counts and is marked uncertain."""
        from review_copilot.review.parser import parse_review

        parsed = parse_review("The change looks mostly fine to me.")

        assert parsed.counts.is_empty
        assert parsed.critical_items == []
        assert parsed.is_uncertain

    def test_empty_reply(self):
        """Test that empty and None replies never raise."""
        from review_copilot.review.parser import parse_review

        assert parse_review("").is_uncertain
        assert parse_review(None).counts.is_empty


class TestStructuredFinding:
    """Tests for parse_structured_finding()."""

    def test_labelled_parts(self):
        """Test splitting issue, impact and fix."""
        from review_copilot.review.parser import parse_structured_finding

        finding = parse_structured_finding(
            "Issue: raw SQL | Impact: data leak | Fix: use bound parameters"
        )

        assert finding.issue == "raw SQL"
        assert finding.impact == "data leak"
        assert finding.fix == "use bound parameters"

    def test_chinese_labels(self):
        """Test Chinese labels with full-width separators."""
        from review_copilot.review.parser import parse_structured_finding

        finding = parse_structured_finding("问题：空指针｜影响：崩溃｜建议：增加判空")

        assert finding.issue == "空指针"
        assert finding.impact == "崩溃"
        assert finding.fix == "增加判空"

    def test_unlabelled_content_uses_defaults(self):
        """Test that plain text becomes the issue with generic impact and fix."""
        from review_copilot.review.parser import (
            DEFAULT_FIX,
            DEFAULT_IMPACT,
            parse_structured_finding,
        )

        finding = parse_structured_finding("possible null dereference")

        assert finding.issue == "possible null dereference"
        assert finding.impact == DEFAULT_IMPACT
        assert finding.fix == DEFAULT_FIX
