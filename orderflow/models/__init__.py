from orderflow.models.user import User, UserRole
from orderflow.models.product import Product, ProductVariant
from orderflow.models.coupon import Coupon, DiscountType
from orderflow.models.cart import Cart, CartItem
from orderflow.models.order import Order, OrderStatus, PaymentMethod
from orderflow.models.order_item import OrderItem, ResolvedOrderItem, UnresolvedOrderItem
from orderflow.models.order_status_history import OrderStatusHistory
