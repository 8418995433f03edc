# Módulo models: tablas SQLModel y esquemas Pydantic del motor de liquidación
# El orden de las importaciones es importante para la creación de las tablas en la base de datos
# Las tablas con claves foráneas deben importarse después de las tablas que referencian

from .driver import Driver, DriverCreate, DriverUpdate, DriverRead, DriverType, DriverStatus, AdminFeeMode
from .earning_record import (
    ImportBatch, NormalizedEarningRecord, NormalizedEarningRecordBase,
    Platform, RecordKind, BatchStatus
)
from .settings_config import (
    FinancialConfig, CommissionConfig, ReferralConfig, GoalRule,
    CalculationBase, GoalCriterion, RewardType, FinancingEligibilityPolicy
)
from .referral_chain import ReferralLink, ReferralStatus
from .settlement import DriverWeeklySettlement, SettlementAuditEntry, SettlementStatus, AuditAction
from .financing import FinancingAgreement, FinancingInstallment, FinancingType, FinancingStatus
