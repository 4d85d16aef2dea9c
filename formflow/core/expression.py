"""Evaluator for manual logical expressions over numbered condition results.

Expressions reference enhanced-condition entries by their 1-based position,
for example ``"(1 AND 2) OR NOT 3"``. Operators are case-insensitive and bind
NOT tighter than AND, and AND tighter than OR.
"""

from typing import Dict, List, Mapping

from .exceptions import ExpressionError


OPERATORS = ("AND", "OR", "NOT")
PRECEDENCE = {"NOT": 3, "AND": 2, "OR": 1}


def normalize_expression(expression: str) -> str:
    return " ".join(expression.upper().split())


def tokenize(expression: str) -> List[str]:
    """Split a normalized expression on whitespace and parentheses."""
    tokens = []
    current = ""
    for char in expression:
        if char.isspace():
            if current:
                tokens.append(current)
                current = ""
        elif char in "()":
            if current:
                tokens.append(current)
                current = ""
            tokens.append(char)
        else:
            current += char
    if current:
        tokens.append(current)
    return tokens


def is_operand(token: str) -> bool:
    return token not in OPERATORS and token not in ("(", ")")


def is_binary_operator(token: str) -> bool:
    return token in ("AND", "OR")


def to_postfix(tokens: List[str]) -> List[str]:
    """Shunting-yard conversion of infix tokens to postfix order."""
    output: List[str] = []
    stack: List[str] = []

    for token in tokens:
        if is_operand(token):
            output.append(token)
        elif token == "NOT" or token == "(":
            stack.append(token)
        elif is_binary_operator(token):
            while stack and stack[-1] != "(" and PRECEDENCE[stack[-1]] >= PRECEDENCE[token]:
                output.append(stack.pop())
            stack.append(token)
        elif token == ")":
            while stack and stack[-1] != "(":
                output.append(stack.pop())
            if not stack:
                raise ExpressionError("Mismatched parentheses")
            stack.pop()

    while stack:
        operator = stack.pop()
        if operator == "(":
            raise ExpressionError("Mismatched parentheses")
        output.append(operator)

    return output


def _evaluate_postfix(postfix: List[str], results: Mapping[str, bool]) -> bool:
    stack: List[bool] = []

    for token in postfix:
        if is_operand(token):
            if token not in results:
                raise ExpressionError(f"Condition {token} not found in evaluation context")
            stack.append(bool(results[token]))
        elif token == "NOT":
            if not stack:
                raise ExpressionError("NOT requires one operand")
            stack.append(not stack.pop())
        else:
            if len(stack) < 2:
                raise ExpressionError(f"{token} requires two operands")
            right = stack.pop()
            left = stack.pop()
            stack.append(left and right if token == "AND" else left or right)

    if len(stack) != 1:
        raise ExpressionError("Malformed expression")
    return stack[0]


def evaluate_expression(expression: str, results: Mapping[str, bool]) -> bool:
    """
    Evaluate a manual expression against numbered condition results.

    Args:
        expression: Expression such as ``"1 AND (2 OR 3)"``
        results: Mapping of condition number (as a string) to its boolean result

    Returns:
        bool: The value of the expression

    Raises:
        ExpressionError: If the expression is malformed or references an unknown condition
    """
    try:
        tokens = tokenize(normalize_expression(expression))
        if not tokens:
            raise ExpressionError("Expression is empty")
        return _evaluate_postfix(to_postfix(tokens), results)
    except ExpressionError as e:
        raise ExpressionError(
            f"Failed to evaluate expression '{expression}': {e.message}",
            expression=expression
        )


def validate_expression(expression: str) -> Dict[str, object]:
    """Check an expression for syntax errors without evaluating it."""
    tokens = tokenize(normalize_expression(expression))
    if not tokens:
        return {"valid": False, "error": "Expression is empty"}

    depth = 0
    for token in tokens:
        if token == "(":
            depth += 1
        elif token == ")":
            depth -= 1
            if depth < 0:
                return {"valid": False, "error": "Unbalanced parentheses"}
    if depth != 0:
        return {"valid": False, "error": "Unbalanced parentheses"}

    for index, token in enumerate(tokens):
        next_token = tokens[index + 1] if index + 1 < len(tokens) else None
        if is_operand(token) and next_token is not None and is_operand(next_token):
            return {"valid": False, "error": "Missing operator between conditions"}
        if next_token is None and (is_binary_operator(token) or token == "NOT"):
            return {"valid": False, "error": "Expression cannot end with an operator"}
        if is_binary_operator(token) and next_token is not None and is_binary_operator(next_token):
            return {"valid": False, "error": "Invalid operator sequence"}

    try:
        _evaluate_postfix(to_postfix(tokens), {token: True for token in tokens if is_operand(token)})
    except ExpressionError as e:
        return {"valid": False, "error": e.message}
    return {"valid": True, "error": None}


def extract_condition_ids(expression: str) -> List[str]:
    return [token for token in tokenize(normalize_expression(expression)) if is_operand(token)]
