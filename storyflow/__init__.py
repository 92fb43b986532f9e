"""storyflow - creative-writing workflow engine.

Runs an ordered list of typed nodes (AI calls, text transforms, variable
updates and loop/condition/parallel blocks) as a single resumable workflow.
"""

__version__ = "0.1.0"
