import contextlib
import io
import os
import tempfile
import textwrap
import unittest

import abistamp


SOURCE = textwrap.dedent(
    """\
    #define FOO 1+2
    #define EMPTY
    #define PAIR(a, b) ((a) + \\
                        (b))
    #define UNLISTED 5
    #define GONE 5
    #undef GONE
    #define BACK 1
    #undef BACK
    #define BACK 2

    struct Foo {
        int a;
        int b;
    };

    typedef struct {
        unsigned int n;
        unsigned char data[];
    } Blob;

    enum Bar { X = 1, Y = 2 };

    int helper(void) { struct Local { int z; } l; l.z = 0; return l.z; }
    """
)

CONFIG = textwrap.dedent(
    """\
    target_unit: abi_check.c
    wanted:
      structs: [Foo, Blob, Local]
      enums: [Bar]
      macros: [FOO, EMPTY, PAIR, GONE, BACK]
    growable:
      enums: [Bar]
    """
)


class ClangFrontendTests(unittest.TestCase):
    def setUp(self) -> None:
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = self.temp_dir.name
        self.source = os.path.join(self.root, "abi_check.c")
        with open(self.source, "w", encoding="utf-8") as handle:
            handle.write(SOURCE)
        self.config_path = os.path.join(self.root, "abi.yaml")
        with open(self.config_path, "w", encoding="utf-8") as handle:
            handle.write(CONFIG)

    def tearDown(self) -> None:
        self.temp_dir.cleanup()

    def test_descriptors_and_macro_table(self) -> None:
        tu = abistamp.parse_translation_unit(self.source)
        descriptors = {d.name: d for d in abistamp.iter_type_descriptors(tu)}
        self.assertEqual(descriptors["Foo"].size, 8)
        self.assertEqual(
            [(f.name, f.offset, f.size) for f in descriptors["Foo"].fields],
            [("a", 0, 4), ("b", 4, 4)],
        )
        self.assertEqual(descriptors["Blob"].fields[-1].size, None)
        self.assertEqual(
            [(e.name, e.value) for e in descriptors["Bar"].enumerators],
            [("X", 1), ("Y", 2)],
        )
        self.assertNotIn("Local", descriptors)

        macros = abistamp.collect_macro_table(tu)
        self.assertEqual(macros["FOO"], "FOO 1+2")
        self.assertEqual(macros["EMPTY"], "EMPTY")
        self.assertEqual(macros["PAIR"], "PAIR(a, b) ((a) + (b))")
        self.assertNotIn("GONE", macros)
        self.assertEqual(macros["BACK"], "BACK 2")

    def test_cli_generates_artifact(self) -> None:
        out = os.path.join(self.root, "generated.c")
        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr):
            status = abistamp.main(["generate", "--config", self.config_path, "--out", out, self.source])
        self.assertEqual(status, 0)
        with open(out, encoding="utf-8") as handle:
            text = handle.read()
        for expected in (
            "ABI_CHECK_SIZE_EQ(Foo, 8);",
            "ABI_CHECK_FIELD(Foo, a, 0, 4);",
            "ABI_CHECK_FIELD(Foo, b, 4, 4);",
            "ABI_CHECK_SIZE_EQ(Blob, 4);",
            "ABI_CHECK_FIELD(Blob, n, 0, 4);",
            "ABI_CHECK_FIELD_FLEXIBLE(Blob, data, 4);",
            "ABI_CHECK_ENUM_VAL_EQ(Bar, X, 1);",
            "ABI_CHECK_ENUM_VAL_GE(Bar, Y, 2);",
            "#define FOO 1+2\n",
            "#define PAIR(a, b) ((a) + (b))\n",
            "#define BACK 2\n",
        ):
            self.assertIn(expected, text)
        self.assertNotIn("EMPTY", text)
        self.assertNotIn("UNLISTED", text)
        self.assertNotIn("#define GONE", text)
        self.assertIn("Missing wanted symbol GONE", stderr.getvalue())
        self.assertIn("Missing wanted symbol EMPTY", stderr.getvalue())
        self.assertIn("Missing wanted symbol Local", stderr.getvalue())

    def test_cli_is_a_noop_for_other_units(self) -> None:
        other = os.path.join(self.root, "other.c")
        with open(other, "w", encoding="utf-8") as handle:
            handle.write(SOURCE)
        out = os.path.join(self.root, "generated.c")
        status = abistamp.main(["generate", "--config", self.config_path, "--out", out, other])
        self.assertEqual(status, 0)
        self.assertFalse(os.path.exists(out))

    def test_cli_exit_codes(self) -> None:
        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr):
            bad_out = os.path.join(self.root, "no-such-dir", "generated.c")
            self.assertEqual(
                abistamp.main(["generate", "--config", self.config_path, "--out", bad_out, self.source]),
                1,
            )
            self.assertEqual(
                abistamp.main(["generate", "--config", os.path.join(self.root, "absent.yaml"), self.source]),
                2,
            )
            self.assertEqual(abistamp.main(["generate", "--config", self.config_path, self.source]), 2)
        self.assertIn("[abistamp] error: Failed to open output file", stderr.getvalue())

    def test_compile_errors_abort_without_output(self) -> None:
        with open(self.source, "w", encoding="utf-8") as handle:
            handle.write("struct Foo { int a; };\nstruct Foo { int b; };\n")
        out = os.path.join(self.root, "generated.c")
        stderr = io.StringIO()
        with contextlib.redirect_stderr(stderr):
            status = abistamp.main(["generate", "--config", self.config_path, "--out", out, self.source])
        self.assertEqual(status, 1)
        self.assertFalse(os.path.exists(out))
        self.assertEqual(sorted(os.listdir(self.root)), ["abi.yaml", "abi_check.c"])


if __name__ == "__main__":
    unittest.main()
