"""
Tools the planner model may call through the Converse tool-use API.
"""

import json
from typing import Any, Dict, List

from ..models.core import WearableSnapshot, to_jsonable
from ..utils.logging_config import get_logger
from .nutrition import NutritionLookup

logger = get_logger(__name__)

PLANNER_TOOLS: List[Dict[str, Any]] = [
    {
        'toolSpec': {
            'name': 'get_health_data',
            'description': "Get the user's current health metrics from their wearable/phone sensors: steps, heart rate, "
                           'sleep hours, stress level.',
            'inputSchema': {
                'json': {
                    'type': 'object',
                    'properties': {
                        'sessionId': {
                            'type': 'string',
                            'description': 'The current session ID'
                        }
                    },
                    'required': []
                }
            }
        }
    },
    {
        'toolSpec': {
            'name': 'get_nutrition_info',
            'description': 'Look up nutritional information (calories, protein, carbs, fat) for a specific food item.',
            'inputSchema': {
                'json': {
                    'type': 'object',
                    'properties': {
                        'foodQuery': {
                            'type': 'string',
                            'description': "The food item to look up, e.g. 'chicken breast 200g' or 'pizza slice'"
                        }
                    },
                    'required': ['foodQuery']
                }
            }
        }
    },
    {
        'toolSpec': {
            'name': 'get_daily_progress',
            'description': "Get the user's progress toward their daily health goals (steps, calories).",
            'inputSchema': {
                'json': {
                    'type': 'object',
                    'properties': {
                        'currentSteps': {'type': 'number', 'description': 'Current step count from sensors'},
                        'goalSteps': {'type': 'number', 'description': 'Daily step goal'},
                        'currentCalories': {'type': 'number', 'description': 'Estimated calories consumed'},
                        'goalCalories': {'type': 'number', 'description': 'Daily calorie goal'}
                    },
                    'required': []
                }
            }
        }
    },
]


class ToolError(Exception):
    """Custom exception for tool execution errors."""
    pass


def _number(tool_input: Dict[str, Any], key: str, default: float) -> float:
    value = tool_input.get(key)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value
    return default


class PlannerToolbox:
    """Executes planner tool calls against the data resolved for the current turn.

    Instances are bound to one turn so the model can only read the caller's own
    session data, whatever sessionId it passes.
    """

    def __init__(self, wearable: WearableSnapshot, nutrition: NutritionLookup, goals: Dict[str, float]):
        self.wearable = wearable
        self.nutrition = nutrition
        self.goals = goals

    def __call__(self, name: str, tool_input: Dict[str, Any]) -> Dict[str, Any]:
        logger.info(f'Executing tool: {name}({json.dumps(tool_input)[:100]})')

        if name == 'get_health_data':
            return to_jsonable(self.wearable)

        if name == 'get_nutrition_info':
            query = tool_input.get('foodQuery')
            if not isinstance(query, str) or not query.strip():
                query = 'balanced meal'
            return {'items': self.nutrition.context(query)}

        if name == 'get_daily_progress':
            steps = _number(tool_input, 'currentSteps', self.wearable.steps)
            goal_steps = _number(tool_input, 'goalSteps', self.goals.get('steps', 8000)) or 8000
            calories = _number(tool_input, 'currentCalories', 0)
            goal_calories = _number(tool_input, 'goalCalories', self.goals.get('calories', 2000)) or 2000
            return {
                'steps': {'current': steps, 'goal': goal_steps, 'percent': round(steps / goal_steps * 100)},
                'calories': {'current': calories, 'goal': goal_calories, 'percent': round(calories / goal_calories * 100)},
                'message': 'Step goal reached!' if steps >= goal_steps else f'{int(goal_steps - steps)} steps remaining today',
            }

        raise ToolError(f'Unknown tool: {name}')
