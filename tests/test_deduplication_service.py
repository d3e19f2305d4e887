"""
Tests for Deduplicator merging and filter_records.
"""
import dataclasses

import pytest

from newspulse.models.content import UNTITLED
from newspulse.services.deduplication_service import Deduplicator, filter_records
from tests.conftest import make_record


@pytest.fixture
def dedup():
    return Deduplicator()


class TestMerge:
    """Merging batches into one recency-ordered list"""

    def test_newer_record_comes_first(self, dedup):
        older = make_record('A', source='S1', minutes=0)
        newer = make_record('B', source='S2', minutes=60)

        assert dedup.merge([[older], [newer]]) == [newer, older]

    def test_merge_is_idempotent(self, dedup):
        batch = [
            make_record('One', source='S1', minutes=5),
            make_record('Two', source='S1', minutes=1),
            make_record('Three', source='S2', minutes=9),
        ]
        merged = dedup.merge([batch])

        assert dedup.merge([merged]) == merged
        assert dedup.merge([merged, merged]) == merged

    def test_same_title_same_source_keeps_first(self, dedup):
        first = make_record('Big News!', source='S1', minutes=0, link='https://a.example/1')
        repeat = make_record('big news', source='S1', minutes=30, link='https://a.example/2')

        merged = dedup.merge([[first], [repeat]])

        assert merged == [first]
        assert dedup.stats['title_filtered'] == 1

    def test_same_title_other_source_at_other_time_is_kept(self, dedup):
        one = make_record('Shared headline', source='S1', minutes=0)
        two = make_record('Shared headline', source='S2', minutes=45)

        assert dedup.merge([[one], [two]]) == [two, one]
        assert dedup.stats['story_filtered'] == 0

    def test_syndicated_story_collapses_across_sources(self, dedup):
        a_first = make_record('A', source='S1', minutes=0)
        a_second = make_record('A', source='S2', minutes=0)
        b = make_record('B', source='S2', minutes=30)

        merged = dedup.merge([[a_first], [a_second, b]])

        assert merged == [b, a_first]
        assert [r.title for r in merged] == ['B', 'A']
        assert dedup.stats['story_filtered'] == 1

    def test_untitled_items_are_kept_apart_by_link(self, dedup):
        items = [
            make_record(UNTITLED, source='S1', link=f'https://a.example/{i}')
            for i in range(5)
        ]

        assert len(dedup.merge([items])) == 5

    def test_untitled_items_with_the_same_link_collapse(self, dedup):
        first = make_record(UNTITLED, source='S1', link='https://a.example/1')
        again = make_record(UNTITLED, source='S1', link='https://a.example/1', minutes=5)

        assert dedup.merge([[first], [again]]) == [first]
        assert dedup.stats['title_filtered'] == 1

    def test_duplicate_id_is_collapsed(self, dedup):
        original = make_record('Original', source='S1')
        renamed = make_record('Renamed', source='S1')
        renamed = dataclasses.replace(renamed, id=original.id)

        merged = dedup.merge([[original, renamed]])

        assert merged == [original]
        assert dedup.stats['id_filtered'] == 1

    def test_blank_records_are_dropped(self, dedup):
        blank = make_record('   ', source='S1', link='')

        assert dedup.merge([[blank]]) == []
        assert dedup.stats['empty_filtered'] == 1

    def test_ties_keep_input_order(self, dedup):
        a = make_record('A', source='S1', minutes=10)
        b = make_record('B', source='S2', minutes=10)
        c = make_record('C', source='S3', minutes=10)

        assert dedup.merge([[a, b], [c]]) == [a, b, c]

    def test_empty_batches(self, dedup):
        assert dedup.merge([]) == []
        assert dedup.merge([[], []]) == []

    def test_normalize_text(self):
        assert Deduplicator.normalize_text('  Hello,   WORLD! ') == 'hello world'
        assert Deduplicator.normalize_text(None) == ''

    def test_add_only_processes_new_batches(self, dedup):
        first = make_record('First', source='S1', minutes=1)
        second = make_record('Second', source='S2', minutes=2)
        repeat = make_record('first', source='S1', minutes=3)

        dedup.add([[first]])
        merged = dedup.add([[second, repeat]])

        assert merged == [second, first]
        assert dedup.stats['total_processed'] == 3
        assert dedup.stats['title_filtered'] == 1

    def test_merge_starts_from_scratch(self, dedup):
        dedup.add([[make_record('Old', source='S1')]])
        fresh = make_record('New', source='S1')

        assert dedup.merge([[fresh]]) == [fresh]
        assert dedup.stats['total_processed'] == 1

    def test_reset_statistics(self, dedup):
        dedup.merge([[make_record('A')]])
        dedup.reset_statistics()

        assert all(value == 0 for value in dedup.stats.values())


class TestFilterRecords:
    """Keyword search over merged results"""

    def test_matches_title_or_body_case_insensitively(self):
        records = [
            make_record('Python release', minutes=3),
            make_record('Weather', minutes=2, body='Rain expected, python sighted'),
            make_record('Markets', minutes=1),
        ]

        matched = filter_records(records, 'PYTHON')

        assert [r.title for r in matched] == ['Python release', 'Weather']

    def test_blank_keyword_returns_everything(self):
        records = [make_record('A'), make_record('B')]

        assert filter_records(records, '  ') == records
