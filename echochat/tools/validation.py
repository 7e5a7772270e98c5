import jsonschema

from echochat.tools.base import Tool, normalize_schema


class ToolValidator:
    @staticmethod
    def validate(tool: Tool, arguments: dict) -> tuple[bool, str | None]:
        try:
            jsonschema.validate(
                instance=arguments,
                schema=normalize_schema(tool.parameters),
            )
            return True, None
        except jsonschema.ValidationError as e:
            if e.validator == "required" and isinstance(e.instance, dict):
                missing = [k for k in e.validator_value if k not in e.instance]
                if missing:
                    return False, f"Missing required parameter: {missing[0]}"
            return False, str(e.message)
