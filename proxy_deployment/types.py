import click


class MinInt(click.ParamType):
    """A bounded integer option, e.g. an index into a network's signing accounts."""

    name = "minint"

    def __init__(self, min_value: int):
        self.min_value = min_value

    def convert(self, value, param, ctx):
        if isinstance(value, int):
            number = value
        else:
            try:
                number = int(value, 10)
            except (TypeError, ValueError):
                self.fail(f"{value!r} is not a whole number", param, ctx)
        if number < self.min_value:
            self.fail(
                f"{number} is below the minimum allowed value of {self.min_value}", param, ctx
            )
        return number

    def __repr__(self):
        return f"MinInt({self.min_value})"
