import itertools

import pytest
from lazy import InfiniteSequenceError, PredicateError, Sequence


def counting():
    return Sequence.from_iterable(itertools.count())


class TestComposability:
    """Test operator composition and method chaining"""

    def test_method_chaining(self):
        """Operators can be chained together"""
        result = (
            Sequence.from_list(range(20))
            .map(lambda _, x: x * 2)
            .filter(lambda x: x > 10)
            .take(5)
        )

        expected = [12, 14, 16, 18, 20]
        assert result == expected, f"Expected {expected}, got {result}"

    def test_map_receives_upstream_and_element(self):
        upstream = Sequence.from_list([1, 2])
        seen = []
        mapped = upstream.map(lambda seq, x: seen.append(seq) or x * 10)
        assert mapped.to_list() == [10, 20]
        assert seen == [upstream, upstream]

    def test_multiple_maps(self):
        result = (
            Sequence.from_list([1, 2, 3, 4, 5])
            .map(lambda _, x: x * 2)
            .map(lambda _, x: x + 1)
            .map(lambda _, x: x * 3)
            .to_list()
        )
        assert result == [9, 15, 21, 27, 33]

    def test_operators_do_not_mutate_upstream(self):
        """Composing an operator leaves the upstream untouched until pulled"""
        upstream = Sequence.from_list([1, 2, 3])
        mapped = upstream.map(lambda _, x: x)
        assert upstream.has_next()
        assert mapped.finite is upstream.finite
        assert mapped.take(1) == [1]
        assert upstream.to_list() == [2, 3]

    def test_map_keeps_infinite_flag(self):
        seq = counting().map(lambda _, x: x + 1)
        assert not seq.finite
        with pytest.raises(InfiniteSequenceError):
            seq.to_list()
        assert seq.take(3) == [1, 2, 3]


class TestFilter:
    """Test filter() lookahead and caching"""

    def test_filter_preserves_relative_order(self):
        data = [7, 2, 9, 4, 4, 1, 8]
        result = Sequence.from_list(data).filter(lambda x: x % 2 == 0).to_list()
        assert result == [2, 4, 4, 8]

    def test_multiple_filters(self):
        result = (
            Sequence.from_list(range(20))
            .filter(lambda x: x % 2 == 0)
            .filter(lambda x: x % 3 == 0)
            .filter(lambda x: x > 5)
            .to_list()
        )
        assert result == [6, 12, 18]

    def test_filter_with_no_matches(self):
        seq = Sequence.from_list([1, 3, 5]).filter(lambda x: x > 10)
        assert not seq.has_next()
        assert seq.to_list() == []

    def test_repeated_has_next_does_not_rescan(self):
        """The matched element is cached until next() consumes it"""
        pulled = []
        seq = (
            Sequence.from_list(range(10))
            .map(lambda _, x: pulled.append(x) or x)
            .filter(lambda x: x > 5)
        )

        assert seq.has_next()
        assert seq.has_next()
        assert seq.has_next()
        assert pulled == [0, 1, 2, 3, 4, 5, 6]

        assert seq.next() == 6
        assert pulled == [0, 1, 2, 3, 4, 5, 6], "next() must reuse the cached match"

        assert seq.next() == 7
        assert pulled[-1] == 7

    def test_lookahead_cutoff_on_infinite_source(self):
        """Consecutive non-matches beyond max_lookahead end the filtered sequence"""
        seq = counting().filter(lambda x: x < 5 or x == 100, max_lookahead=10)
        assert seq.take(20) == [0, 1, 2, 3, 4]
        assert not seq.has_next()

    def test_lookahead_counts_consecutive_misses(self):
        """Each match resets the lookahead budget"""
        seq = counting().filter(lambda x: x % 3 == 0, max_lookahead=3)
        assert seq.take(5) == [0, 3, 6, 9, 12]

        tight = counting().filter(lambda x: x % 3 == 0, max_lookahead=2)
        assert tight.take(5) == [0], "Two consecutive misses exhaust a lookahead of 2"

    def test_lookahead_ignored_for_finite_upstream(self):
        """A finite upstream always terminates, so no cutoff applies"""
        data = list(range(100)) + [1000]
        seq = Sequence.from_list(data).filter(lambda x: x >= 1000, max_lookahead=3)
        assert seq.to_list() == [1000]

    def test_unbounded_filter_on_infinite_source(self):
        seq = counting().filter(lambda x: x % 1000 == 0)
        assert seq.take(3) == [0, 1000, 2000]

    def test_filter_predicate_failure_is_fatal(self):
        seq = Sequence.from_list([1, "two", 3]).filter(lambda x: x > 0)
        assert seq.next() == 1
        with pytest.raises(PredicateError):
            seq.has_next()


class TestTakeWhile:
    """Test take_while()"""

    def test_stops_at_first_rejected_element(self):
        seq = Sequence.from_list([1, 2, 3, 10, 4, 5]).take_while(lambda x: x < 5)
        assert seq.to_list() == [1, 2, 3]
        assert not seq.has_next()

    def test_take_while_on_infinite_source(self):
        seq = counting().take_while(lambda x: x * x < 50)
        assert seq.take(100) == [0, 1, 2, 3, 4, 5, 6, 7]

    def test_take_while_caches_candidate(self):
        pulled = []
        seq = (
            Sequence.from_list([1, 2, 3])
            .map(lambda _, x: pulled.append(x) or x)
            .take_while(lambda x: x < 3)
        )
        assert seq.has_next()
        assert seq.has_next()
        assert pulled == [1]
        assert seq.to_list() == [1, 2]

    def test_take_while_rejecting_first_element(self):
        assert Sequence.from_list([9, 1]).take_while(lambda x: x < 5).to_list() == []


class TestReduce:
    """Test reduce()"""

    def test_sum(self):
        total = Sequence.from_list([1, 2, 3, 4, 5]).reduce(0, lambda _, acc, x: acc + x)
        assert total == 15

    def test_reduce_on_empty(self):
        assert Sequence.empty().reduce("init", lambda _, acc, x: acc + x) == "init"

    def test_reduce_after_filter(self):
        product = (
            Sequence.from_list(range(1, 7))
            .filter(lambda x: x % 2 == 0)
            .reduce(1, lambda _, acc, x: acc * x)
        )
        assert product == 48

    def test_reduce_requires_finite(self):
        with pytest.raises(InfiniteSequenceError):
            counting().reduce(0, lambda _, acc, x: acc + x)


class TestExtend:
    """Test extend() continuation"""

    def test_extend_receives_resolved_element(self):
        seq = Sequence.from_list([1, 2, 3]).extend(lambda s, x: s.emit(x * 100))
        assert seq.to_list() == [100, 200, 300]

    def test_extend_composition_matches_direct_composition(self):
        """A.extend(f).extend(g) equals A.extend(g . f)"""
        f = lambda x: x + 1
        g = lambda x: x * 3

        chained = (
            Sequence.from_list(range(5))
            .extend(lambda s, x: s.emit(f(x)))
            .extend(lambda s, x: s.emit(g(x)))
        )
        direct = Sequence.from_list(range(5)).extend(lambda s, x: s.emit(g(f(x))))

        assert chained.to_list() == direct.to_list() == [3, 6, 9, 12, 15]

    def test_extend_can_flatten(self):
        seq = Sequence.from_list([1, 2, 3]).extend(
            lambda s, x: s.emit_all(Sequence.from_list([x] * x)),
            no_wrap=False,
        )
        assert seq.to_list() == [1, 2, 2, 3, 3, 3]

    def test_extend_inherits_flags(self):
        upstream = counting()
        seq = upstream.extend(lambda s, x: s.emit(x))
        assert seq.finite is False
        assert seq.no_wrap is True
        assert seq.signature == "extend.iterable", "extend without a signature keeps the upstream one"

    def test_extend_overrides(self):
        """has_more and finite can be overridden to bound an infinite upstream"""
        produced = []

        def count_up(seq, _):
            produced.append(1)
            return seq.emit(len(produced))

        seq = Sequence.infinity().extend(
            count_up,
            has_more=lambda s: len(produced) < 4,
            finite=True,
            signature="counter",
        )
        assert seq.finite
        assert seq.to_list() == [1, 2, 3, 4]
        assert seq.signature == "extend.counter"

    def test_extend_on_infinity_builds_generator(self):
        """infinity() plus extend() turns producer state into a sequence"""
        state = {"a": 0, "b": 1}

        def fibonacci(seq, _):
            value = state["a"]
            state["a"], state["b"] = state["b"], state["a"] + state["b"]
            return seq.emit(value)

        assert Sequence.infinity().extend(fibonacci).take(8) == [0, 1, 1, 2, 3, 5, 8, 13]


class TestMerge:
    """Test round-robin merge()"""

    def test_merge_alternates(self):
        merged = Sequence.merge(Sequence.from_list([2, 4, 8]), Sequence.from_list([3, 9, 27]))
        assert merged.finite
        assert merged.to_list() == [2, 3, 4, 9, 8, 27]

    def test_merge_continues_with_remaining_input(self):
        merged = Sequence.merge(Sequence.from_list([1, 2, 3, 4]), Sequence.from_list([10]))
        assert merged.to_list() == [1, 10, 2, 3, 4]

    def test_merge_skips_exhausted_inputs(self):
        merged = Sequence.merge(
            Sequence.from_list([1]),
            Sequence.empty(),
            Sequence.from_list([2, 3]),
        )
        assert merged.to_list() == [1, 2, 3]

    def test_merge_is_infinite_if_any_input_is(self):
        merged = Sequence.from_list([1, 2]).merge_with(Sequence.cycle(["x"]))
        assert not merged.finite
        assert merged.take(5) == [1, "x", 2, "x", "x"]

    def test_merge_of_nothing(self):
        merged = Sequence.merge()
        assert merged.finite
        assert merged.to_list() == []

    def test_merge_with_filtered_inputs(self):
        evens = Sequence.from_list(range(10)).filter(lambda x: x % 2 == 0)
        odds = Sequence.from_list(range(10)).filter(lambda x: x % 2 == 1)
        assert Sequence.merge(evens, odds).to_list() == list(range(10))
