from pricerun.models.catalog import Price, Product, Sku
from pricerun.models.pricing_rule import PricingRule
from pricerun.models.rule_run import RuleRun, RuleTarget
from pricerun.models.price_change import PriceChange
from pricerun.models.outbox import EventLog, OutboxDeliveryAttempt, OutboxEvent
from pricerun.models.audit_log import AuditRecord
