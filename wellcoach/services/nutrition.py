"""
Nutrition context lookup backed by a static food table.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..utils.logging_config import get_logger

logger = get_logger(__name__)

GENERIC_TIPS = [
    'Focus on balanced meals with protein + fiber in each meal.',
    'Prefer low-glycemic snacks in late afternoon to reduce energy crash.',
    'Hydration target: 2-2.5L water daily unless medically restricted.',
]

# Polish stems are matched by prefix to tolerate inflection.
FOOD_KEYWORDS = re.compile(
    r'\b(eat|ate|eaten|food|meal|breakfast|lunch|dinner|snack|chicken|salmon|rice|pasta|salad|egg|bread|pizza'
    r'|burger|sandwich|fruit|yogurt|milk|cheese|oats|banana|apple|coffee|tea|water|juice|protein|calories|kcal)'
    r'|(?:jedzeni|jedz|jadl|jad[łl]|sniadani|śniadani|obiad|kolacj|posiłe|posilek|kurczak|ryż|ryz|makaron|jajk'
    r'|chleb|owoc|mleko|ser|banan|jabłk|jablk|kaw[aeę]|herbat|ziemniak|warzy|zup|salat|jogurt|pierogi|kotlet'
    r'|schabow)', re.IGNORECASE)

POLISH_TO_ENGLISH = {
    'kurczak': 'chicken',
    'ryż': 'rice',
    'ryz': 'rice',
    'makaron': 'pasta',
    'jajk': 'egg',
    'jajo': 'egg',
    'chleb': 'bread',
    'ziemniak': 'potato',
    'warzyw': 'vegetables',
    'zup': 'soup',
    'salat': 'salad',
    'sałat': 'salad',
    'jogurt': 'yogurt',
    'mleko': 'milk',
    'banan': 'banana',
    'jablk': 'apple',
    'jabłk': 'apple',
    'owoc': 'fruit',
    'kaw': 'coffee',
    'herbat': 'tea',
    'pierogi': 'dumplings',
    'kotlet': 'cutlet',
    'schabow': 'cutlet',
    'losos': 'salmon',
    'łosoś': 'salmon',
    'ryba': 'fish',
    'indyk': 'turkey',
    'owsiank': 'oatmeal',
    'platki': 'oats',
    'kanapk': 'sandwich',
    'pizza': 'pizza',
    'szpinak': 'spinach',
    'brokul': 'broccoli',
    'brokuł': 'broccoli',
}


@dataclass(frozen=True)
class NutritionItem:
    name: str
    calories: int
    protein: int
    carbs: int
    fat: int
    serving: str

    def summary(self) -> str:
        return (f'{self.name} ({self.serving}): {self.calories} kcal | P: {self.protein}g | C: {self.carbs}g | '
                f'F: {self.fat}g')


FOOD_TABLE: Dict[str, NutritionItem] = {
    'chicken': NutritionItem('Chicken breast', 230, 43, 0, 5, '150g'),
    'salmon': NutritionItem('Salmon fillet', 280, 30, 0, 18, '150g'),
    'fish': NutritionItem('White fish fillet', 160, 33, 0, 2, '150g'),
    'turkey': NutritionItem('Turkey breast', 135, 30, 0, 1, '100g'),
    'rice': NutritionItem('Cooked white rice', 205, 4, 45, 0, '1 cup'),
    'pasta': NutritionItem('Cooked pasta', 220, 8, 43, 1, '1 cup'),
    'potato': NutritionItem('Boiled potato', 130, 3, 30, 0, '150g'),
    'bread': NutritionItem('Whole wheat bread', 80, 4, 14, 1, '1 slice'),
    'egg': NutritionItem('Eggs', 140, 12, 1, 10, '2 large'),
    'oat': NutritionItem('Oatmeal', 150, 5, 27, 3, '40g dry'),
    'oatmeal': NutritionItem('Oatmeal', 150, 5, 27, 3, '40g dry'),
    'yogurt': NutritionItem('Greek yogurt', 100, 17, 6, 1, '170g'),
    'milk': NutritionItem('Milk 2%', 120, 8, 12, 5, '250ml'),
    'cheese': NutritionItem('Cheddar cheese', 115, 7, 0, 9, '28g'),
    'banana': NutritionItem('Banana', 105, 1, 27, 0, '120g'),
    'apple': NutritionItem('Apple', 95, 0, 25, 0, '180g'),
    'salad': NutritionItem('Mixed green salad', 35, 2, 7, 0, '1 bowl'),
    'spinach': NutritionItem('Spinach', 23, 3, 4, 0, '100g'),
    'broccoli': NutritionItem('Broccoli', 55, 4, 11, 1, '150g'),
    'vegetables': NutritionItem('Mixed vegetables', 60, 3, 12, 0, '150g'),
    'soup': NutritionItem('Vegetable soup', 100, 4, 15, 3, '300ml'),
    'pizza': NutritionItem('Pizza slice', 285, 12, 36, 10, '1 slice'),
    'burger': NutritionItem('Hamburger', 350, 17, 33, 16, '1 burger'),
    'sandwich': NutritionItem('Turkey sandwich', 320, 22, 35, 9, '1 sandwich'),
    'dumplings': NutritionItem('Pierogi', 300, 10, 45, 8, '6 pieces'),
    'cutlet': NutritionItem('Breaded pork cutlet', 390, 28, 15, 24, '150g'),
    'coffee': NutritionItem('Black coffee', 2, 0, 0, 0, '240ml'),
    'tea': NutritionItem('Unsweetened tea', 2, 0, 0, 0, '240ml'),
    'juice': NutritionItem('Orange juice', 110, 2, 26, 0, '240ml'),
}


def _matches(word: str, key: str) -> bool:
    # plurals and short suffixes ("eggs", "potatoes"), or a long prefix ("vegetable")
    if word.startswith(key):
        return len(word) - len(key) <= 2
    return len(word) >= 5 and key.startswith(word)


def food_terms(message: str) -> List[str]:
    """Table keys mentioned in a message, in order of appearance, translated from Polish where needed."""
    if not FOOD_KEYWORDS.search(message):
        return []

    terms: List[str] = []
    for word in re.split(r'\s+', message.lower()):
        stripped = re.sub(r'[^a-ząćęłńóśźż]', '', word)
        if not stripped:
            continue
        translated = next((english for stem, english in POLISH_TO_ENGLISH.items() if stripped.startswith(stem)), stripped)
        key = next((key for key in FOOD_TABLE if _matches(translated, key)), None)
        if key is not None and key not in terms:
            terms.append(key)
    return terms


class NutritionLookup:
    """Static nutrition table keyed by food keyword.

    Third-party nutrition APIs are an external collaborator; a caller wanting
    live data can subclass and override lookup().
    """

    def __init__(self, table: Optional[Dict[str, NutritionItem]] = None, max_items: int = 5):
        self.table = FOOD_TABLE if table is None else table
        self.max_items = max_items

    def lookup(self, message: str) -> List[NutritionItem]:
        return [self.table[term] for term in food_terms(message) if term in self.table][:self.max_items]

    def context(self, message: str) -> List[str]:
        """
        Summary lines for foods mentioned in a message.

        Args:
            message: User message or tool query

        Returns:
            One line per food plus a total line, or the generic tips when no food is recognized
        """
        items = self.lookup(message)
        if not items:
            logger.debug('No food recognized, returning generic nutrition tips')
            return list(GENERIC_TIPS)

        lines = [item.summary() for item in items]
        if len(items) > 1:
            lines.append(f'Total: {sum(i.calories for i in items)} kcal | Protein: {sum(i.protein for i in items)}g | '
                         f'Carbs: {sum(i.carbs for i in items)}g | Fat: {sum(i.fat for i in items)}g')
        logger.info(f'Nutrition context: {len(items)} items recognized')
        return lines
