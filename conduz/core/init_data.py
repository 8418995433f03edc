import logging
import traceback

from sqlmodel import Session, select

from conduz.core.db import engine
from conduz.models.settings_config import CommissionConfig, FinancialConfig, ReferralConfig

logger = logging.getLogger(__name__)


def init_financial_config(session: Session):
    if session.exec(select(FinancialConfig)).first():
        return
    # IVA 6%, comisión legada 7%, arrendatario 4%, afiliado 25 € fijos
    session.add(FinancialConfig(version=1, updated_by="init_data"))
    session.commit()


def init_commission_config(session: Session):
    if session.exec(select(CommissionConfig)).first():
        return
    # 550 € mínimos; 2% / 1% / 0.5% por nivel sobre el repasse del referido
    session.add(CommissionConfig(version=1, updated_by="init_data"))
    session.commit()


def init_referral_config(session: Session):
    if session.exec(select(ReferralConfig)).first():
        return
    session.add(ReferralConfig(version=1, updated_by="init_data"))
    session.commit()


def init_default_configs(session: Session):
    init_financial_config(session)
    init_commission_config(session)
    init_referral_config(session)


def init_data():
    """Función principal de inicialización de datos"""
    session = Session(engine)

    try:
        init_default_configs(session)
        logger.info("Inicialización de datos completada")
    except Exception as e:
        logger.error("Error en la inicialización: %s\n%s", str(e), traceback.format_exc())
        raise
    finally:
        session.close()
