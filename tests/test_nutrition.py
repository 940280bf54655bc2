from wellcoach.services.nutrition import GENERIC_TIPS, NutritionLookup, food_terms


def test_food_terms_in_order_of_appearance():
    assert food_terms('I ate chicken with rice') == ['chicken', 'rice']


def test_polish_food_names_are_translated():
    assert food_terms('kurczak z ryżem') == ['chicken', 'rice']


def test_plural_forms_match():
    assert food_terms('two eggs and a banana for breakfast') == ['egg', 'banana']


def test_context_lists_items_and_total():
    lines = NutritionLookup().context('I ate chicken with rice')
    assert lines[0].startswith('Chicken breast (150g): 230 kcal')
    assert lines[-1] == 'Total: 435 kcal | Protein: 47g | Carbs: 45g | Fat: 5g'


def test_single_item_has_no_total():
    assert len(NutritionLookup().context('salmon for dinner')) == 1


def test_unknown_food_returns_generic_tips():
    assert NutritionLookup().context('hello there') == GENERIC_TIPS
    assert NutritionLookup().context('I had lunch') == GENERIC_TIPS


def test_max_items_limits_lookup():
    lookup = NutritionLookup(max_items=2)
    assert len(lookup.lookup('chicken rice pasta salad')) == 2
