# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import contextlib
import io
import os
import tempfile
from unittest import mock

from hprof_test_fixture import CHILD_CLASS, HprofTestFixture, INSTANCE
from pycruncher.heap import HeapTag

import cruncher


class TestCruncherCli(HprofTestFixture):
    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.addCleanup(self.temp_dir.cleanup)
        self.input = os.path.join(self.temp_dir.name, "dump.hprof")
        self.output = os.path.join(self.temp_dir.name, "dump.bmd")

    def write_input(self, hprof):
        with open(self.input, "wb") as f:
            f.write(hprof.to_bytes())

    def test_crunch_and_dump(self):
        self.write_input(self.build_simple_dump())
        self.assertEqual(
            cruncher.main(["--log-level", "error", "crunch", self.input, self.output]),
            0,
        )
        self.assertTrue(os.path.exists(self.output))

        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            self.assertEqual(cruncher.main(["dump", self.output]), 0)
        lines = out.getvalue().splitlines()
        self.assertTrue(lines[0].startswith("BmdHeader("))
        self.assertIn("java.lang.Object", lines[1])
        self.assertTrue(lines[-1].startswith("BmdRootObjects("))

    def test_failed_conversion_removes_output(self):
        hprof = self.build_hierarchy()
        with hprof.heap_dump_segment() as heap:
            heap.write_root(HeapTag.ROOT_JAVA_FRAME, INSTANCE)
            heap.write_instance_dump(INSTANCE, CHILD_CLASS, b"\0")
        self.write_input(hprof)
        self.assertEqual(
            cruncher.main(["--log-level", "critical", "crunch", self.input, self.output]),
            1,
        )
        self.assertFalse(os.path.exists(self.output))

    def test_missing_input(self):
        with open(self.output, "wb") as f:
            f.write(b"previous")
        self.assertEqual(
            cruncher.main(["--log-level", "critical", "crunch", self.input, self.output]),
            1,
        )
        # Nothing was written, so an existing output is left alone
        with open(self.output, "rb") as f:
            self.assertEqual(f.read(), b"previous")

    def test_missing_dump_input(self):
        self.assertEqual(
            cruncher.main(["--log-level", "critical", "dump", self.output]), 1
        )

    def test_unexpected_error_removes_output(self):
        self.write_input(self.build_simple_dump())
        with mock.patch("pycruncher.crunch.crunch", side_effect=RuntimeError("boom")):
            with self.assertRaises(RuntimeError):
                cruncher.main(["--log-level", "critical", "crunch", self.input, self.output])
        self.assertFalse(os.path.exists(self.output))

    def test_dump_of_truncated_file(self):
        with open(self.output, "wb") as f:
            f.write(b"\x01\x01\x10short")
        self.assertEqual(
            cruncher.main(["--log-level", "critical", "dump", self.output]), 1
        )

    def test_requires_a_command(self):
        with contextlib.redirect_stderr(io.StringIO()):
            with self.assertRaises(SystemExit):
                cruncher.arg_parser().parse_args([])
