import io
import os
import sys
import unittest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
PROGRAMS = os.path.join(ROOT, "tests", "programs")

sys.path.insert(0, ROOT)

from kl import Interpreter, eval_file  # noqa: E402


class ProgramTests(unittest.TestCase):
    def test_programs(self):
        for name in sorted(os.listdir(PROGRAMS)):
            if not name.endswith(".kl"):
                continue
            path = os.path.join(PROGRAMS, name)
            with self.subTest(program=name):
                with open(path[: -len(".kl")] + ".out", encoding="utf-8") as f:
                    expected = f.read()
                stdout = io.StringIO()
                result = eval_file(path, Interpreter(stdout))
                self.assertIsNone(result, msg=f"{result}")
                self.assertEqual(stdout.getvalue(), expected)


if __name__ == "__main__":
    unittest.main()
