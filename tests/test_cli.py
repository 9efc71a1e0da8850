import os
import subprocess
import sys
import tempfile
import unittest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
KL = os.path.join(ROOT, "kl.py")


def run_kl(*args, source=None, env=None):
    with tempfile.TemporaryDirectory() as directory:
        if source is not None:
            path = os.path.join(directory, "main.kl")
            if isinstance(source, str):
                source = source.encode("utf-8")
            with open(path, "wb") as f:
                f.write(source)
            args = (path, *args)
        environment = dict(os.environ)
        for name in ["KL_DUMP", "KL_TOKENS", "KL_GNUPLOT"]:
            environment.pop(name, None)
        environment.update(env or {})
        process = subprocess.run(
            [sys.executable, KL, *args],
            capture_output=True,
            text=True,
            env=environment,
        )
        return process.returncode, process.stdout, process.stderr


class CliTests(unittest.TestCase):
    def test_runs_program(self):
        code, stdout, stderr = run_kl(source='num x = 2; num y = 3; print(x + y);\nprint("ok");')
        self.assertEqual((code, stdout, stderr), (0, "23\nok\n", ""))

    def test_usage(self):
        code, stdout, stderr = run_kl()
        self.assertEqual(code, 1)
        self.assertEqual(stdout, "")
        self.assertIn("usage: kl <file.kl>", stderr)
        code, _, stderr = run_kl("a.kl", "b.kl")
        self.assertEqual(code, 1)
        self.assertIn("usage:", stderr)

    def test_missing_file(self):
        code, _, stderr = run_kl("does-not-exist.kl")
        self.assertEqual(code, 1)
        self.assertIn("error: cannot read `does-not-exist.kl`", stderr)

    def test_lex_error(self):
        code, _, stderr = run_kl(source='num x = 1;\nprint("open);\n')
        self.assertEqual(code, 1)
        self.assertRegex(stderr, r"main\.kl, line 2\] error: unterminated string")

    def test_parse_error(self):
        code, _, stderr = run_kl(source="num x = 1;\n\nnum y = ;\n")
        self.assertEqual(code, 1)
        self.assertRegex(stderr, r"main\.kl, line 3\] error: expected expression")

    def test_runtime_error_with_trace(self):
        code, stdout, stderr = run_kl(
            source='print("before");\nfun f() { return 1 / 0; }\nf();\nprint("after");\n'
        )
        self.assertEqual(code, 1)
        self.assertEqual(stdout, "before\n")
        self.assertRegex(stderr, r"main\.kl, line 2\] error: division by zero")
        self.assertRegex(stderr, r"\.\.\.within f called from .*main\.kl, line 3")

    def test_runaway_recursion(self):
        code, _, stderr = run_kl(source="fun f(num n) { return f(n + 1); }\nf(0);\n")
        self.assertEqual(code, 1)
        self.assertIn("error: maximum recursion depth exceeded", stderr)

    def test_deep_recursion(self):
        code, stdout, stderr = run_kl(
            source=(
                "fun num down(num n) {\n"
                "    if (n == 0) { return 0; }\n"
                "    return 1 + down(n - 1);\n"
                "}\n"
                "print(down(1000));\n"
            )
        )
        self.assertEqual((code, stdout, stderr), (0, "1000\n", ""))

    def test_undecodable_source(self):
        for env in [{}, {"KL_TOKENS": "1"}]:
            with self.subTest(env=env):
                code, stdout, stderr = run_kl(source=b'print("\xff");\n', env=env)
                self.assertEqual((code, stdout), (1, ""))
                self.assertRegex(stderr, r"^error: cannot decode `.*main\.kl`: ")
                self.assertNotIn("Traceback", stderr)

    def test_top_level_return_exits_cleanly(self):
        code, stdout, _ = run_kl(source="print(1);\nreturn 5;\nprint(2);\n")
        self.assertEqual((code, stdout), (0, "1\n"))

    def test_dump(self):
        code, stdout, stderr = run_kl(
            source='num x = 2;\nstr s = "hi";\nfun num twice(num a) { return a * 2; }\n',
            env={"KL_DUMP": "1"},
        )
        self.assertEqual((code, stdout), (0, ""))
        self.assertIn("variables:\n    x = 2\n    s = \"hi\"\n", stderr)
        self.assertIn("functions:\n    twice(num a) -> num\n", stderr)

    def test_dump_disabled_with_zero(self):
        code, _, stderr = run_kl(source="num x = 2;\n", env={"KL_DUMP": "0"})
        self.assertEqual((code, stderr), (0, ""))

    def test_tokens(self):
        code, stdout, stderr = run_kl(source="num x = 2;\nprint(x);\n", env={"KL_TOKENS": "1"})
        self.assertEqual((code, stdout), (0, "2\n"))
        lines = stderr.splitlines()
        self.assertEqual(lines[0].split(), ["1", "NUM", "num"])
        self.assertEqual(lines[5].split(), ["2", "PRINT", "print"])
        self.assertEqual(lines[-1].split(), ["3", "EOF", "end-of-file"])


if __name__ == "__main__":
    unittest.main()
