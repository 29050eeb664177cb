# app/models/__init__.py
from .food import FoodItem, FoodIngredient
from .inventory import Ingredient, AIAlert, AlertType, AlertSeverity
from .order import Order, OrderItem, OrderStatus

# Export all models
__all__ = [
    "AIAlert",
    "AlertSeverity",
    "AlertType",
    "FoodIngredient",
    "FoodItem",
    "Ingredient",
    "Order",
    "OrderItem",
    "OrderStatus",
]
