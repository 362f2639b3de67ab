"""ClipAIble - web page clipping and conversion service.

Turns a captured web page into a document (Markdown, HTML, PDF, and any other
format a generator is registered for):
- Content identification via AI-inferred CSS selectors, full AI extraction,
  or a local no-AI heuristic
- Optional translation and summary
- A single resumable job that survives host process restarts
"""

__version__ = "0.1.0"
