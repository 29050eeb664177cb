from tortoise import fields, models
import uuid


class FoodItem(models.Model):
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    name = fields.CharField(max_length=255, unique=True)
    price = fields.DecimalField(max_digits=12, decimal_places=2)
    description = fields.TextField(default="")
    image = fields.CharField(max_length=512, default="")
    created_at = fields.DatetimeField(auto_now_add=True)
    updated_at = fields.DatetimeField(auto_now=True)

    class Meta:
        table = "food_items"


class FoodIngredient(models.Model):
    """Join row: how much of an ingredient one portion of a food item consumes."""
    id = fields.UUIDField(primary_key=True, default=uuid.uuid4)
    food_item = fields.ForeignKeyField("models.FoodItem", related_name="ingredients", on_delete=fields.CASCADE)
    ingredient = fields.ForeignKeyField("models.Ingredient", related_name="food_items", on_delete=fields.RESTRICT)
    # Same unit as Ingredient.unit
    qty_required = fields.DecimalField(max_digits=12, decimal_places=3)

    class Meta:
        table = "food_ingredients"
        unique_together = (("food_item", "ingredient"),)
        indexes = [
            ("ingredient_id",),  # Reverse lookup: which dishes use an ingredient
        ]
