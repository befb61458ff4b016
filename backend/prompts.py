# Prompt for pre-filling the task form from a web page
# Recurrence: daily, weekly or monthly, with an optional numeric goal
# Dates: due_date is a calendar day (YYYY-MM-DD)
EXTRACT_TASK_PROMPT = """You are an expert at analyzing web content and creating actionable tasks. Analyze the content of the web page below and extract the key information to create a task in a to-do list application.

Today's date is {today}. Use this as a reference for any relative dates (e.g., "next Friday", "in 30 days").

From the page content, extract the following information:

1. title: A clear and concise title for the task, at most 100 characters.
2. description: A detailed summary of the task. If the content contains steps, format them as a numbered, step-by-step list separated by newlines (e.g., "1. First step...\\n2. Second step...").
3. due_date: If a specific deadline or date is mentioned, give it in YYYY-MM-DD format. Otherwise null.
4. tags: 1-3 relevant lowercase keywords. Do not include "ai" as a tag.
5. Recurrence and goal: check whether the task is described as recurring or as having a quantitative goal.
   - recurrence: "daily", "weekly" or "monthly"
   - goal_type: "count" or "amount"
   - goal_target: the numeric target
   - goal_unit: the unit of the target if specified (e.g., "articles", "km", "$")
   If the task is not recurring or has no clear goal, set all of these to null.

Respond with this exact JSON format:
{{
    "title": "task title here",
    "description": "summary here",
    "due_date": "YYYY-MM-DD" or null,
    "tags": ["tag1", "tag2"],
    "recurrence": "daily" | "weekly" | "monthly" | null,
    "goal_type": "count" | "amount" | null,
    "goal_target": number or null,
    "goal_unit": "unit" or null
}}

Only respond with valid JSON, no other text.

Page URL: {url}

Page content:
{content}
"""
