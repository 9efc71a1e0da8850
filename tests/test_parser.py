import os
import sys
import unittest

ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

sys.path.insert(0, ROOT)

from kl import (  # noqa: E402
    AstExpressionBinary,
    AstExpressionFunctionCall,
    AstExpressionNumber,
    AstExpressionPostfix,
    AstExpressionUnary,
    AstExpressionVariable,
    AstStatementAssignment,
    AstStatementDeclaration,
    AstStatementExpression,
    AstStatementFunction,
    AstStatementIfElifElse,
    AstStatementImport,
    AstStatementPrint,
    AstStatementReturn,
    AstStatementWhile,
    BinaryOperator,
    DeclaredKind,
    Lexer,
    ParseError,
    Parser,
    TokenKind,
    UnaryOperator,
)


def parse(source):
    return Parser(Lexer(source)).parse_program()


def expression(source):
    (statement,) = parse(f"num _ = {source};").statements
    return statement.expression


class ParserTests(unittest.TestCase):
    def test_empty_program(self):
        self.assertEqual(parse("").statements, [])

    def test_declarations(self):
        statements = parse('num a = 1; str b = "x"; var c = 2.5;').statements
        self.assertEqual(
            [(s.kind, s.name) for s in statements],
            [(DeclaredKind.NUM, "a"), (DeclaredKind.STR, "b"), (DeclaredKind.VAR, "c")],
        )
        self.assertTrue(all(isinstance(s, AstStatementDeclaration) for s in statements))

    def test_declaration_requires_assign_and_semicolon(self):
        with self.assertRaises(ParseError) as context:
            parse("num a 1;")
        self.assertIn("expected `=`", str(context.exception))
        with self.assertRaises(ParseError) as context:
            parse("num a = 1")
        self.assertIn("expected `;`", str(context.exception))

    def test_precedence_sum_and_product(self):
        tree = expression("1 + 2 * 3")
        self.assertIsInstance(tree, AstExpressionBinary)
        self.assertEqual(tree.op, BinaryOperator.ADD)
        self.assertEqual(tree.rhs.op, BinaryOperator.MUL)

    def test_comparison_is_lowest(self):
        tree = expression("a + 1 < b & 3")
        self.assertEqual(tree.op, BinaryOperator.LT)
        self.assertEqual(tree.lhs.op, BinaryOperator.ADD)
        self.assertEqual(tree.rhs.op, BinaryOperator.BITAND)

    def test_bitwise_levels(self):
        tree = expression("a | b xor c & d")
        self.assertEqual(tree.op, BinaryOperator.BITOR)
        self.assertEqual(tree.rhs.op, BinaryOperator.XOR)
        self.assertEqual(tree.rhs.rhs.op, BinaryOperator.BITAND)

    def test_left_associative(self):
        tree = expression("10 - 4 - 3")
        self.assertEqual(tree.op, BinaryOperator.SUB)
        self.assertIsInstance(tree.lhs, AstExpressionBinary)
        self.assertIsInstance(tree.rhs, AstExpressionNumber)

    def test_power_is_right_associative(self):
        tree = expression("2 ^ 3 ^ 2")
        self.assertEqual(tree.op, BinaryOperator.POW)
        self.assertIsInstance(tree.lhs, AstExpressionNumber)
        self.assertEqual(tree.rhs.op, BinaryOperator.POW)

    def test_grouping(self):
        tree = expression("(1 + 2) * 3")
        self.assertEqual(tree.op, BinaryOperator.MUL)
        self.assertEqual(tree.lhs.op, BinaryOperator.ADD)

    def test_unary(self):
        tree = expression("-x * !y")
        self.assertEqual(tree.op, BinaryOperator.MUL)
        self.assertIsInstance(tree.lhs, AstExpressionUnary)
        self.assertEqual(tree.lhs.op, UnaryOperator.NEG)
        self.assertEqual(tree.rhs.op, UnaryOperator.NOT)

    def test_postfix(self):
        (statement,) = parse("x++;").statements
        self.assertIsInstance(statement, AstStatementExpression)
        self.assertIsInstance(statement.expression, AstExpressionPostfix)
        self.assertEqual(statement.expression.op, TokenKind.INC)
        self.assertEqual(statement.expression.name, "x")

    def test_postfix_requires_variable(self):
        with self.assertRaises(ParseError) as context:
            parse("num y = 3++;")
        self.assertIn("postfix target must be a variable", str(context.exception))

    def test_module_access_and_calls(self):
        tree = expression("math.sqrt(16) + math.pi + f(1, 2)")
        call = tree.lhs.lhs
        self.assertIsInstance(call, AstExpressionFunctionCall)
        self.assertEqual((call.module, call.name, len(call.arguments)), ("math", "sqrt", 1))
        constant = tree.lhs.rhs
        self.assertIsInstance(constant, AstExpressionVariable)
        self.assertEqual((constant.module, constant.name), ("math", "pi"))
        self.assertEqual((tree.rhs.module, tree.rhs.name), (None, "f"))
        self.assertEqual(len(tree.rhs.arguments), 2)

    def test_print_plus_separates(self):
        (statement,) = parse("print(x + y - 1 + (a + b) + f(c + d));").statements
        self.assertIsInstance(statement, AstStatementPrint)
        self.assertEqual(len(statement.expressions), 4)
        self.assertIsInstance(statement.expressions[0], AstExpressionVariable)
        self.assertEqual(statement.expressions[1].op, BinaryOperator.SUB)
        self.assertEqual(statement.expressions[2].op, BinaryOperator.ADD)
        self.assertEqual(statement.expressions[3].arguments[0].op, BinaryOperator.ADD)

    def test_empty_print(self):
        (statement,) = parse("print();").statements
        self.assertEqual(statement.expressions, [])

    def test_if_elif_else(self):
        (statement,) = parse(
            "if (a) { print(1); } elif (b) { print(2); } elif (c) { } else { print(4); }"
        ).statements
        self.assertIsInstance(statement, AstStatementIfElifElse)
        self.assertEqual(len(statement.conditionals), 3)
        self.assertIsNotNone(statement.else_block)

    def test_while(self):
        (statement,) = parse("while (n < 3) { n++; }").statements
        self.assertIsInstance(statement, AstStatementWhile)
        self.assertEqual(len(statement.body.statements), 1)

    def test_missing_closing_brace(self):
        with self.assertRaises(ParseError) as context:
            parse("while (1) { print(1);")
        self.assertIn("expected `}`, found `end-of-file`", str(context.exception))

    def test_function_declaration(self):
        (statement,) = parse("fun num add(num a, str b, var c) { return a; }").statements
        self.assertIsInstance(statement, AstStatementFunction)
        self.assertEqual(statement.kind, DeclaredKind.NUM)
        self.assertEqual(
            [(p.kind, p.name) for p in statement.parameters],
            [(DeclaredKind.NUM, "a"), (DeclaredKind.STR, "b"), (DeclaredKind.VAR, "c")],
        )
        self.assertEqual(statement.signature(), "add(num a, str b, var c) -> num")
        (body,) = statement.body.statements
        self.assertIsInstance(body, AstStatementReturn)

    def test_function_declaration_inferred_return_kind(self):
        (statement,) = parse("fun hello() { return; }").statements
        self.assertEqual(statement.kind, DeclaredKind.VAR)
        self.assertIsNone(statement.body.statements[0].expression)

    def test_duplicate_parameter(self):
        with self.assertRaises(ParseError):
            parse("fun f(num a, num a) { }")

    def test_import(self):
        (statement,) = parse("import math;").statements
        self.assertIsInstance(statement, AstStatementImport)
        self.assertEqual(statement.name, "math")

    def test_assignment(self):
        (statement,) = parse("x = x * 2;").statements
        self.assertIsInstance(statement, AstStatementAssignment)
        self.assertEqual(statement.target.name, "x")

    def test_assignment_requires_variable(self):
        with self.assertRaises(ParseError):
            parse("f() = 1;")

    def test_unexpected_token(self):
        for source in ["123;", "else { }", "};", "(x);"]:
            with self.subTest(source=source):
                with self.assertRaises(ParseError) as context:
                    parse(source)
                self.assertIn("unexpected token", str(context.exception))

    def test_parse_is_deterministic(self):
        source = """
        import math;
        fun num f(num x) { if (x > 1) { return x * 2; } else { return -x; } }
        num i = 0;
        while (i < 10) { print(i + ": " + f(i) + math.pi); i++; }
        """
        self.assertEqual(parse(source), parse(source))


if __name__ == "__main__":
    unittest.main()
