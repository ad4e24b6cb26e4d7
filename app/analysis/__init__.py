"""Brand analysis engine.

Turns stored provider answers into report results:
  1. Question sets and scoping (questions, prompts)
  2. Answer parsing (json_parser, response_shapes)
  3. Source classification (source_classifier)
  4. Aggregators (reputation, visibility, category, brand_matcher)
  5. Impact/effort scoring and PR insights (scoring, insights)
"""
