from explorable.managers.template.builder import BuiltImage, TemplateBuilder
from explorable.managers.template.compiler import BuildPlan, compile_template

__all__ = ["BuildPlan", "BuiltImage", "TemplateBuilder", "compile_template"]
