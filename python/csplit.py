#!/usr/bin/env python3
"""
Name: csplit
Description: split a file into sections determined by context lines
License: perl
"""

import sys
import os
import argparse
import re
from collections import namedtuple
from enum import Enum

# Constants
EX_SUCCESS = 0
EX_FAILURE = 1
VERSION = '1.0'

DEFAULT_PREFIX = 'xx'
DEFAULT_DIGITS = 2

# Consecutive non-progressing cuts tolerated by an unbounded repeat.
STALL_LIMIT = 2


class InvalidPattern(ValueError):
    """A pattern token is malformed or out of order."""


class NoMatch(Exception):
    """A pattern has nothing left to cut on in the remaining input."""


class NonProgressingRepeat(Exception):
    """An unbounded repeat stopped moving the cursor forward."""


class IOFailure(IOError):
    """The input could not be read or an output file could not be created."""


class Kind(Enum):
    LINE = 'line'
    REGEX = 'regex'
    SUPPRESSED = 'suppressed'
    REPEAT = 'repeat'
    REPEAT_FOREVER = 'repeat_forever'


# One parsed split directive. Only the fields relevant to `kind` are set.
Pattern = namedtuple('Pattern', ['kind', 'token', 'line', 'regex', 'offset', 'count'],
                     defaults=(None, None, 0, None))

# The half-open line range [start, end) between two cut points.
Segment = namedtuple('Segment', ['start', 'end', 'suppressed'])


def parse_pattern(token: str) -> Pattern:
    """
    Parses a single pattern token into a Pattern.

    '12' is a line number, '/expr/+N' and '%expr%-N' are (suppressed)
    regular expressions with an optional line offset, and '{N}' / '{*}'
    repeat the preceding pattern.
    """
    if re.match(r'^\d+$', token):
        line = int(token)
        if line <= 0:
            raise InvalidPattern(f"'{token}': line number must be greater than zero")
        return Pattern(Kind.LINE, token, line=line)

    match = re.match(r'^\{(\d+|\*)\}$', token)
    if match:
        if match.group(1) == '*':
            return Pattern(Kind.REPEAT_FOREVER, token)
        return Pattern(Kind.REPEAT, token, count=int(match.group(1)))

    if token[:1] in ('/', '%'):
        delim = token[0]
        end = token.rfind(delim)
        if end == 0:
            raise InvalidPattern(f"'{token}': missing closing delimiter '{delim}'")

        expr, offset_str = token[1:end], token[end + 1:]
        if offset_str and not re.match(r'^[+-]?\d+$', offset_str):
            raise InvalidPattern(f"'{token}': invalid offset '{offset_str}'")

        try:
            regex = re.compile(os.fsencode(expr))
        except re.error as e:
            raise InvalidPattern(f"'{token}': invalid regular expression: {e}") from e

        kind = Kind.REGEX if delim == '/' else Kind.SUPPRESSED
        return Pattern(kind, token, regex=regex, offset=int(offset_str or 0))

    raise InvalidPattern(f"'{token}': invalid pattern")


def parse_patterns(tokens) -> list:
    """
    Parses the whole pattern list, checking the rules that involve more than
    one token: a repeat needs a line-number or regex pattern right before it,
    and line numbers must be strictly increasing.
    """
    patterns = []
    last_line = 0
    for token in tokens:
        pattern = parse_pattern(token)

        if pattern.kind in (Kind.REPEAT, Kind.REPEAT_FOREVER):
            if not patterns or patterns[-1].kind in (Kind.REPEAT, Kind.REPEAT_FOREVER):
                raise InvalidPattern(f"'{token}': repeat count must follow a pattern")

        elif pattern.kind is Kind.LINE:
            if pattern.line <= last_line:
                raise InvalidPattern(f"'{token}': line number out of order")
            last_line = pattern.line

        patterns.append(pattern)
    return patterns


class LineSource:
    """
    The whole input held as a list of byte lines, each keeping its line
    terminator, so that cut points can be resolved backwards as well as
    forwards.
    """
    def __init__(self, lines):
        self.lines = list(lines)

    @classmethod
    def from_stream(cls, stream):
        try:
            return cls(stream)
        except (IOError, OSError) as e:
            raise IOFailure(f"read error: {e.strerror or e}") from e

    def __len__(self):
        return len(self.lines)

    def search(self, regex, start: int) -> int:
        """Returns the index of the first line at or after `start` matching `regex`."""
        for index in range(start, len(self.lines)):
            line = self.lines[index]
            if line.endswith(b'\n'):
                line = line[:-1]
            if regex.search(line):
                return index
        raise NoMatch(f"no line matches after line {start + 1}")

    def byte_range(self, start: int, end: int) -> bytes:
        return b''.join(self.lines[start:end])


class LoopGuard:
    """
    Watches the cuts made by one unbounded repeat and raises
    NonProgressingRepeat once it stops making headway. Regex scans always
    start past the previous match, so only the cut position needs watching.
    """
    def __init__(self, cut, limit=STALL_LIMIT):
        self.previous_cut = cut
        self.limit = limit
        self.stalls = 0

    def check_cut(self, cut):
        if cut == self.previous_cut:
            self.stalls += 1
            if self.stalls >= self.limit:
                raise NonProgressingRepeat(f"stuck at line {cut + 1}")
        else:
            self.stalls = 0
        self.previous_cut = cut


class SplitCursor:
    """
    Walks a LineSource under a list of patterns and yields the Segments
    between successive cut points. After the patterns run out, or one of
    them fails to match, whatever input is left becomes one final segment.
    """
    def __init__(self, source, patterns):
        self.source = source
        self.patterns = patterns
        self.prev_cut = 0
        self.last_match = -1

    def segments(self):
        if not len(self.source):
            return

        previous = None
        try:
            for pattern in self.patterns:
                if pattern.kind is Kind.LINE:
                    yield self._commit(self._line_cut(pattern.line - 1), False)
                elif pattern.kind in (Kind.REGEX, Kind.SUPPRESSED):
                    cut = self._match_cut(pattern)
                    yield self._commit(cut, pattern.kind is Kind.SUPPRESSED)
                else:
                    yield from self._repeat(previous, pattern)
                    continue
                previous = pattern
        except NoMatch:
            pass

        # --- Tail handling ---
        if self.prev_cut < len(self.source):
            yield self._commit(len(self.source), False)

    def _commit(self, cut, suppressed):
        segment = Segment(self.prev_cut, cut, suppressed)
        self.prev_cut = cut
        return segment

    def _line_cut(self, cut):
        if cut > len(self.source):
            raise NoMatch(f"line {cut + 1} out of range")
        return max(cut, self.prev_cut)

    def _step_cut(self, step):
        """
        Cuts `step` lines past the previous cut, where `step` is the number
        of lines a line-number pattern puts in the first piece. A cut that
        would leave less than a full step behind it is not made; those
        lines go to the tail instead.
        """
        cut = self.prev_cut + step
        if cut + step > len(self.source):
            raise NoMatch(f"fewer than {step} lines left after line {cut}")
        return cut

    def _match_cut(self, pattern):
        start = max(self.prev_cut, self.last_match + 1)

        self.last_match = self.source.search(pattern.regex, start)
        # Offsets never reach back past the last cut or beyond end of input.
        cut = self.last_match + pattern.offset
        return min(max(cut, self.prev_cut), len(self.source))

    def _repeat(self, previous, pattern):
        """Re-applies `previous` as many times as `pattern` asks for."""
        def next_cut():
            if previous.kind is Kind.LINE:
                return self._step_cut(previous.line - 1)
            return self._match_cut(previous)

        suppressed = previous.kind is Kind.SUPPRESSED

        if pattern.kind is Kind.REPEAT:
            for _ in range(pattern.count):
                yield self._commit(next_cut(), suppressed)
            return

        guard = LoopGuard(self.prev_cut)
        while True:
            try:
                cut = next_cut()
                guard.check_cut(cut)
            except NonProgressingRepeat:
                return
            yield self._commit(cut, suppressed)


class SegmentSink:
    """
    Writes each non-suppressed segment to the next numbered output file
    (prefix + zero-padded index) and records how many bytes went into it.
    """
    def __init__(self, source, prefix=DEFAULT_PREFIX, digits=DEFAULT_DIGITS):
        self.source = source
        self.prefix = prefix
        self.digits = digits
        self.count = 0
        self.sizes = []

    def filename(self, index):
        return f"{self.prefix}{index:0{self.digits}d}"

    def consume(self, segment):
        """Returns the number of bytes written, or None for a discarded segment."""
        if segment.suppressed:
            return None

        if self.count >= 10 ** self.digits:
            raise IOFailure(f"can only create {10 ** self.digits} files")

        name = self.filename(self.count)
        data = self.source.byte_range(segment.start, segment.end)
        try:
            with open(name, 'wb') as f_out:
                f_out.write(data)
        except (IOError, OSError) as e:
            raise IOFailure(f"Can't write '{name}': {e.strerror or e}") from e

        self.count += 1
        self.sizes.append(len(data))
        return len(data)


class ReportEmitter:
    """Prints the byte size of every file written, one per line."""
    def __init__(self, stream=None, silent=False):
        self.stream = stream
        self.silent = silent

    def emit(self, size):
        if self.silent:
            return
        print(size, file=self.stream or sys.stdout, flush=True)


def split_stream(source, patterns, sink, report):
    """
    Runs a complete split: every segment the cursor produces goes through
    the sink, and every one it writes is reported. Returns the list of sizes
    written.
    """
    for segment in SplitCursor(source, patterns).segments():
        size = sink.consume(segment)
        if size is not None:
            report.emit(size)
    return sink.sizes


def main(argv=None):
    """Parses arguments and orchestrates the file splitting process."""
    parser = argparse.ArgumentParser(
        description="Split a file into sections determined by context lines.",
        usage="%(prog)s [-s] [-f prefix] [-n digits] file pattern ..."
    )
    parser.add_argument('-V', '--version', action='version', version=f'%(prog)s {VERSION}')
    parser.add_argument('-f', '--prefix', default=DEFAULT_PREFIX,
                        help=f"Output file name prefix (default: '{DEFAULT_PREFIX}').")
    parser.add_argument('-n', '--digits', type=int, default=DEFAULT_DIGITS,
                        help=f"Number of digits in output file names (default: {DEFAULT_DIGITS}).")
    parser.add_argument('-s', '--silent', '--quiet', dest='silent', action='store_true',
                        help='Do not print the size of each output file.')
    parser.add_argument('file', help="Input file ('-' for stdin).")
    parser.add_argument('patterns', nargs='+', help='Split patterns: N, /expr/[offset], %%expr%%[offset], {N}, {*}.')

    args = parser.parse_args(argv)
    program_name = os.path.basename(sys.argv[0])

    if args.digits <= 0:
        parser.error("invalid number of digits.")

    # --- 1. Parse Patterns (nothing is created if any of them is bad) ---
    try:
        patterns = parse_patterns(args.patterns)
    except InvalidPattern as e:
        print(f"{program_name}: {e}", file=sys.stderr)
        sys.exit(EX_FAILURE)

    # --- 2. Read Input ---
    try:
        if args.file == '-':
            source = LineSource.from_stream(sys.stdin.buffer)
        else:
            if os.path.isdir(args.file):
                print(f"{program_name}: '{args.file}' is a directory", file=sys.stderr)
                sys.exit(EX_FAILURE)
            with open(args.file, 'rb') as input_stream:
                source = LineSource.from_stream(input_stream)
    except IOFailure as e:
        print(f"{program_name}: {e}", file=sys.stderr)
        sys.exit(EX_FAILURE)
    except IOError as e:
        print(f"{program_name}: Can't open '{args.file}': {e.strerror}", file=sys.stderr)
        sys.exit(EX_FAILURE)

    # --- 3. Split ---
    sink = SegmentSink(source, prefix=args.prefix, digits=args.digits)
    report = ReportEmitter(silent=args.silent)
    try:
        split_stream(source, patterns, sink, report)
    except IOFailure as e:
        print(f"{program_name}: {e}", file=sys.stderr)
        sys.exit(EX_FAILURE)

    sys.exit(EX_SUCCESS)

if __name__ == "__main__":
    main()
