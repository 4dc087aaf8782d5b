"""
Programmed Savings Module

Owns the balance of each programmed-savings plan (cartola). The stored
``saldoActual`` is denormalized state and must always equal the sum of
Confirmado deposits minus Procesado withdrawals, so every operation that
moves it reads the plan and the movement and writes both inside one
optimistic storage transaction.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional
import uuid

from .audit import AuditEventType, AuditTrail
from .errors import NotFoundError, ValidationError
from .identity import Identity
from .loans import normalize_label
from .logging_config import get_logger, log_action
from .money import Amount, ZERO, money_str, require_positive, round_money, to_decimal
from .storage import StorageInterface, StorageTransaction


logger = get_logger("microcredit.savings")

MANUAL_DEPOSIT_NOTE = "Depósito manual registrado por administrador."
MANUAL_WITHDRAWAL_NOTE = "Retiro registrado por administrador."


class _LabelEnum(Enum):
    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        wanted = normalize_label(value)
        for member in cls:
            if normalize_label(member.value) == wanted or member.name == wanted.replace(" ", "_"):
                return member
        raise ValidationError(f"Unknown {cls.__name__}: {value!r}")


class PlanStatus(_LabelEnum):
    """Savings plan states"""
    ACTIVO = "Activo"
    PAUSADO = "Pausado"
    COMPLETADO = "Completado"
    CANCELADO = "Cancelado"


class DepositStatus(_LabelEnum):
    """Deposit states; Confirmado and Rechazado are terminal"""
    EN_VERIFICACION = "En Verificación"
    CONFIRMADO = "Confirmado"
    RECHAZADO = "Rechazado"


class WithdrawalStatus(_LabelEnum):
    """Withdrawal states; Procesado and Rechazado are terminal"""
    SOLICITADO = "Solicitado"
    PROCESADO = "Procesado"
    RECHAZADO = "Rechazado"


class AccountType(_LabelEnum):
    AHORROS = "Ahorros"
    CORRIENTE = "Corriente"


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def plan_key(client_id: str, numero_cartola: int) -> str:
    """Storage id of a plan: numbering is per client"""
    return f"{client_id}:{numero_cartola}"


@dataclass
class SavingsPlan:
    """Programmed savings plan"""
    cliente_id: str
    numero_cartola: int
    monto_meta: Decimal
    saldo_actual: Decimal
    estado_plan: PlanStatus
    fecha_creacion: datetime
    ultima_actualizacion: datetime
    nombre_plan: str = ""
    cliente_nombre: str = ""
    plazo_meses: Optional[int] = None
    frecuencia_deposito: str = "Mensual"
    monto_deposito_sugerido: Optional[Decimal] = None
    advisor_id: Optional[str] = None
    advisor_name: Optional[str] = None

    @property
    def id(self) -> str:
        return plan_key(self.cliente_id, self.numero_cartola)

    @property
    def progress_percent(self) -> Decimal:
        if self.monto_meta <= ZERO:
            return ZERO
        return round_money(self.saldo_actual / self.monto_meta * Decimal('100'))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "clienteId": self.cliente_id,
            "clienteNombre": self.cliente_nombre,
            "numeroCartola": self.numero_cartola,
            "nombrePlan": self.nombre_plan,
            "montoMeta": money_str(self.monto_meta),
            "saldoActual": money_str(self.saldo_actual),
            "estadoPlan": self.estado_plan.value,
            "plazoMeses": self.plazo_meses,
            "frecuenciaDeposito": self.frecuencia_deposito,
            "montoDepositoSugerido": (
                money_str(self.monto_deposito_sugerido)
                if self.monto_deposito_sugerido is not None else None
            ),
            "advisorId": self.advisor_id,
            "advisorName": self.advisor_name,
            "fechaCreacion": self.fecha_creacion.isoformat(),
            "ultimaActualizacion": self.ultima_actualizacion.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SavingsPlan':
        suggested = data.get("montoDepositoSugerido")
        return cls(
            cliente_id=data["clienteId"],
            cliente_nombre=data.get("clienteNombre") or "",
            numero_cartola=int(data["numeroCartola"]),
            nombre_plan=data.get("nombrePlan") or "",
            monto_meta=to_decimal(data["montoMeta"]),
            saldo_actual=to_decimal(data.get("saldoActual") or "0"),
            estado_plan=PlanStatus.parse(data["estadoPlan"]),
            plazo_meses=data.get("plazoMeses"),
            frecuencia_deposito=data.get("frecuenciaDeposito") or "Mensual",
            monto_deposito_sugerido=to_decimal(suggested) if suggested is not None else None,
            advisor_id=data.get("advisorId"),
            advisor_name=data.get("advisorName"),
            fecha_creacion=datetime.fromisoformat(data["fechaCreacion"]),
            ultima_actualizacion=datetime.fromisoformat(data["ultimaActualizacion"]),
        )


@dataclass
class Deposit:
    """Deposit into a savings plan"""
    id: str
    cliente_id: str
    numero_cartola: int
    monto_deposito: Decimal
    estado_deposito: DepositStatus
    fecha_deposito: datetime
    notas: str = ""
    comprobante_url: Optional[str] = None
    registrado_por: Optional[str] = None
    admin_verificador_id: Optional[str] = None
    fecha_verificacion: Optional[datetime] = None
    nota_admin: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "clienteId": self.cliente_id,
            "numeroCartola": self.numero_cartola,
            "montoDeposito": money_str(self.monto_deposito),
            "estadoDeposito": self.estado_deposito.value,
            "fechaDeposito": self.fecha_deposito.isoformat(),
            "notas": self.notas,
            "comprobanteUrl": self.comprobante_url,
            "registradoPor": self.registrado_por,
            "adminVerificadorId": self.admin_verificador_id,
            "fechaVerificacion": _iso(self.fecha_verificacion),
            "notaAdmin": self.nota_admin,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Deposit':
        return cls(
            id=data["id"],
            cliente_id=data["clienteId"],
            numero_cartola=int(data["numeroCartola"]),
            monto_deposito=to_decimal(data["montoDeposito"]),
            estado_deposito=DepositStatus.parse(data["estadoDeposito"]),
            fecha_deposito=datetime.fromisoformat(data["fechaDeposito"]),
            notas=data.get("notas") or "",
            comprobante_url=data.get("comprobanteUrl"),
            registrado_por=data.get("registradoPor"),
            admin_verificador_id=data.get("adminVerificadorId"),
            fecha_verificacion=_dt(data.get("fechaVerificacion")),
            nota_admin=data.get("notaAdmin"),
        )


@dataclass
class WithdrawalDestination:
    """Bank account the client wants the money sent to"""
    banco_destino: str
    tipo_cuenta: AccountType
    numero_cuenta: str
    nombre_titular: str
    cedula_titular: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bancoDestino": self.banco_destino,
            "tipoCuenta": self.tipo_cuenta.value,
            "numeroCuenta": self.numero_cuenta,
            "nombreTitular": self.nombre_titular,
            "cedulaTitular": self.cedula_titular,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WithdrawalDestination':
        return cls(
            banco_destino=data.get("bancoDestino") or "",
            tipo_cuenta=AccountType.parse(data.get("tipoCuenta") or "Ahorros"),
            numero_cuenta=data.get("numeroCuenta") or "",
            nombre_titular=data.get("nombreTitular") or "",
            cedula_titular=data.get("cedulaTitular") or "",
        )

    def validate(self) -> None:
        missing = [name for name, value in self.to_dict().items() if not str(value).strip()]
        if missing:
            raise ValidationError(f"Missing withdrawal destination fields: {', '.join(missing)}")


@dataclass
class Withdrawal:
    """Withdrawal from a savings plan"""
    id: str
    cliente_id: str
    numero_cartola: int
    monto_retiro: Decimal
    estado_retiro: WithdrawalStatus
    fecha_solicitud: datetime
    destino: Optional[WithdrawalDestination] = None
    nota_cliente: str = ""
    admin_procesador_id: Optional[str] = None
    fecha_procesado: Optional[datetime] = None
    nota_admin: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "clienteId": self.cliente_id,
            "numeroCartola": self.numero_cartola,
            "montoRetiro": money_str(self.monto_retiro),
            "estadoRetiro": self.estado_retiro.value,
            "fechaSolicitud": self.fecha_solicitud.isoformat(),
            "notaCliente": self.nota_cliente,
            "adminProcesadorId": self.admin_procesador_id,
            "fechaProcesado": _iso(self.fecha_procesado),
            "notaAdmin": self.nota_admin,
        }
        if self.destino:
            data.update(self.destino.to_dict())
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Withdrawal':
        return cls(
            id=data["id"],
            cliente_id=data["clienteId"],
            numero_cartola=int(data["numeroCartola"]),
            monto_retiro=to_decimal(data["montoRetiro"]),
            estado_retiro=WithdrawalStatus.parse(data["estadoRetiro"]),
            fecha_solicitud=datetime.fromisoformat(data["fechaSolicitud"]),
            destino=WithdrawalDestination.from_dict(data) if data.get("bancoDestino") else None,
            nota_cliente=data.get("notaCliente") or "",
            admin_procesador_id=data.get("adminProcesadorId"),
            fecha_procesado=_dt(data.get("fechaProcesado")),
            nota_admin=data.get("notaAdmin"),
        )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SavingsManager:
    """
    Savings plan ledger with a transactional balance invariant
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        clock: Optional[Callable[[], datetime]] = None,
        max_attempts: int = 5
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.clock = clock or _utcnow
        self.max_attempts = max_attempts

        self.plans_table = "savings_plans"
        self.deposits_table = "savings_deposits"
        self.withdrawals_table = "savings_withdrawals"
        self.counters_table = "savings_counters"

    # --- plans ------------------------------------------------------------

    def create_plan(
        self,
        client_id: str,
        monto_meta: Amount,
        identity: Identity,
        nombre_plan: str = "",
        cliente_nombre: str = "",
        plazo_meses: Optional[int] = None,
        frecuencia_deposito: str = "Mensual",
        monto_deposito_sugerido: Optional[Amount] = None,
        advisor_id: Optional[str] = None,
        advisor_name: Optional[str] = None
    ) -> SavingsPlan:
        """
        Create a plan with the next sequential cartola number for the client.

        The number comes from a per-client counter document incremented in
        the same transaction that writes the plan, so two concurrent
        creations can never receive the same number.
        """
        if not client_id:
            raise ValidationError("Client ID is required")
        goal = require_positive(monto_meta, "montoMeta")
        suggested = (
            require_positive(monto_deposito_sugerido, "montoDepositoSugerido")
            if monto_deposito_sugerido is not None else None
        )
        if plazo_meses is not None and plazo_meses < 1:
            raise ValidationError("plazoMeses must be at least 1")

        def create(txn: StorageTransaction) -> SavingsPlan:
            counter = txn.get(self.counters_table, client_id) or {"clienteId": client_id, "lastNumeroCartola": 0}
            numero = int(counter["lastNumeroCartola"]) + 1
            now = self.clock()
            plan = SavingsPlan(
                cliente_id=client_id,
                cliente_nombre=cliente_nombre,
                numero_cartola=numero,
                nombre_plan=nombre_plan or f"Ahorro Programado #{numero}",
                monto_meta=goal,
                saldo_actual=ZERO,
                estado_plan=PlanStatus.ACTIVO,
                plazo_meses=plazo_meses,
                frecuencia_deposito=frecuencia_deposito,
                monto_deposito_sugerido=suggested,
                advisor_id=advisor_id,
                advisor_name=advisor_name,
                fecha_creacion=now,
                ultima_actualizacion=now
            )
            counter["lastNumeroCartola"] = numero
            txn.set(self.counters_table, client_id, counter)
            txn.set(self.plans_table, plan.id, plan.to_dict())
            return plan

        plan = self.storage.run_transaction(create, max_attempts=self.max_attempts)

        self.audit_trail.log_event(
            event_type=AuditEventType.SAVINGS_PLAN_CREATED,
            entity_type="savings_plan",
            entity_id=plan.id,
            user_id=identity.uid,
            metadata={"monto_meta": goal, "numero_cartola": plan.numero_cartola}
        )
        log_action(logger, "info", f"Savings plan #{plan.numero_cartola} created",
                   user_id=identity.uid, action="savings_plan_created", resource=f"savings_plan:{plan.id}")
        return plan

    def get_plan(self, client_id: str, numero_cartola: int) -> SavingsPlan:
        data = self.storage.load(self.plans_table, plan_key(client_id, numero_cartola))
        if not data:
            raise NotFoundError(f"Savings plan {numero_cartola} not found for client {client_id}")
        return SavingsPlan.from_dict(data)

    def get_plans_for_client(self, client_id: str) -> List[SavingsPlan]:
        plans = [SavingsPlan.from_dict(d) for d in self.storage.find(self.plans_table, {"clienteId": client_id})]
        plans.sort(key=lambda plan: plan.numero_cartola)
        return plans

    def get_all_plans(self) -> List[SavingsPlan]:
        """Grouped query across every client's plans, newest first"""
        plans = [SavingsPlan.from_dict(d) for d in self.storage.load_all(self.plans_table)]
        plans.sort(key=lambda plan: plan.fecha_creacion, reverse=True)
        return plans

    def update_plan_status(
        self,
        client_id: str,
        numero_cartola: int,
        status,
        identity: Identity
    ) -> SavingsPlan:
        new_status = PlanStatus.parse(status)
        key = plan_key(client_id, numero_cartola)

        def update(txn: StorageTransaction) -> PlanStatus:
            plan = self._read_plan(txn, client_id, numero_cartola)
            previous = plan.estado_plan
            plan.estado_plan = new_status
            plan.ultima_actualizacion = self.clock()
            txn.set(self.plans_table, key, plan.to_dict())
            return previous

        previous = self.storage.run_transaction(update, max_attempts=self.max_attempts)

        self.audit_trail.log_event(
            event_type=AuditEventType.SAVINGS_PLAN_STATUS_CHANGED,
            entity_type="savings_plan",
            entity_id=key,
            user_id=identity.uid,
            metadata={"from": previous.value, "to": new_status.value}
        )
        log_action(logger, "info", f"Savings plan status {previous.value} -> {new_status.value}",
                   user_id=identity.uid, action="savings_plan_status_changed", resource=f"savings_plan:{key}")
        return self.get_plan(client_id, numero_cartola)

    # --- deposits ---------------------------------------------------------

    def add_deposit(
        self,
        client_id: str,
        numero_cartola: int,
        amount: Amount,
        identity: Identity,
        notes: str = "",
        receipt_url: Optional[str] = None
    ) -> Deposit:
        """Client submits a deposit; it waits En Verificación, balance untouched"""
        value = require_positive(amount, "montoDeposito")
        self.get_plan(client_id, numero_cartola)

        deposit = Deposit(
            id=str(uuid.uuid4()),
            cliente_id=client_id,
            numero_cartola=numero_cartola,
            monto_deposito=value,
            estado_deposito=DepositStatus.EN_VERIFICACION,
            fecha_deposito=self.clock(),
            notas=notes or "",
            comprobante_url=receipt_url,
            registrado_por=identity.uid
        )
        self.storage.save(self.deposits_table, deposit.id, deposit.to_dict())

        self._audit_deposit(AuditEventType.DEPOSIT_SUBMITTED, deposit, identity)
        log_action(logger, "info", "Deposit submitted for verification",
                   user_id=identity.uid, action="deposit_submitted", resource=f"deposit:{deposit.id}")
        return deposit

    def confirm_deposit(
        self,
        client_id: str,
        numero_cartola: int,
        deposit_id: str,
        identity: Identity
    ) -> Deposit:
        """
        Confirm a deposit and credit the plan balance atomically.

        Confirming an already Confirmado deposit is a no-op.
        """
        def confirm(txn: StorageTransaction):
            plan = self._read_plan(txn, client_id, numero_cartola)
            deposit = self._read_deposit(txn, client_id, numero_cartola, deposit_id)
            if deposit.estado_deposito == DepositStatus.CONFIRMADO:
                return deposit, False
            if deposit.estado_deposito == DepositStatus.RECHAZADO:
                raise ValidationError("A rejected deposit cannot be confirmed")

            now = self.clock()
            plan.saldo_actual += deposit.monto_deposito
            plan.ultima_actualizacion = now
            deposit.estado_deposito = DepositStatus.CONFIRMADO
            deposit.admin_verificador_id = identity.uid
            deposit.fecha_verificacion = now
            txn.set(self.plans_table, plan.id, plan.to_dict())
            txn.set(self.deposits_table, deposit.id, deposit.to_dict())
            return deposit, True

        deposit, changed = self.storage.run_transaction(confirm, max_attempts=self.max_attempts)
        if changed:
            self._audit_deposit(AuditEventType.DEPOSIT_CONFIRMED, deposit, identity)
            log_action(logger, "info", "Deposit confirmed, balance credited",
                       user_id=identity.uid, action="deposit_confirmed", resource=f"deposit:{deposit.id}")
        return deposit

    def reject_deposit(
        self,
        client_id: str,
        numero_cartola: int,
        deposit_id: str,
        note: str,
        identity: Identity
    ) -> Deposit:
        """Reject a pending deposit with a mandatory note; balance untouched"""
        if not note or not note.strip():
            raise ValidationError("A rejection note is required")

        def reject(txn: StorageTransaction) -> Deposit:
            deposit = self._read_deposit(txn, client_id, numero_cartola, deposit_id)
            if deposit.estado_deposito != DepositStatus.EN_VERIFICACION:
                raise ValidationError(f"Deposit is already {deposit.estado_deposito.value}")
            deposit.estado_deposito = DepositStatus.RECHAZADO
            deposit.nota_admin = note.strip()
            deposit.admin_verificador_id = identity.uid
            deposit.fecha_verificacion = self.clock()
            txn.set(self.deposits_table, deposit.id, deposit.to_dict())
            return deposit

        deposit = self.storage.run_transaction(reject, max_attempts=self.max_attempts)

        self._audit_deposit(AuditEventType.DEPOSIT_REJECTED, deposit, identity)
        log_action(logger, "info", "Deposit rejected",
                   user_id=identity.uid, action="deposit_rejected", resource=f"deposit:{deposit.id}")
        return deposit

    def add_manual_deposit_by_admin(
        self,
        client_id: str,
        numero_cartola: int,
        amount: Amount,
        identity: Identity,
        notes: Optional[str] = None
    ) -> Deposit:
        """Register a trusted deposit already Confirmado, crediting the balance in the same transaction"""
        value = require_positive(amount, "montoDeposito")

        def register(txn: StorageTransaction) -> Deposit:
            plan = self._read_plan(txn, client_id, numero_cartola)
            now = self.clock()
            deposit = Deposit(
                id=str(uuid.uuid4()),
                cliente_id=client_id,
                numero_cartola=numero_cartola,
                monto_deposito=value,
                estado_deposito=DepositStatus.CONFIRMADO,
                fecha_deposito=now,
                notas=notes or MANUAL_DEPOSIT_NOTE,
                registrado_por=identity.uid,
                admin_verificador_id=identity.uid,
                fecha_verificacion=now
            )
            plan.saldo_actual += value
            plan.ultima_actualizacion = now
            txn.set(self.plans_table, plan.id, plan.to_dict())
            txn.set(self.deposits_table, deposit.id, deposit.to_dict())
            return deposit

        deposit = self.storage.run_transaction(register, max_attempts=self.max_attempts)

        self._audit_deposit(AuditEventType.DEPOSIT_CONFIRMED, deposit, identity, manual=True)
        log_action(logger, "info", "Manual deposit registered",
                   user_id=identity.uid, action="deposit_manual", resource=f"deposit:{deposit.id}")
        return deposit

    def delete_deposit(
        self,
        client_id: str,
        numero_cartola: int,
        deposit_id: str,
        identity: Identity
    ) -> Deposit:
        """
        Delete a deposit. A Confirmado deposit is reversed out of the
        balance in the same transaction as the deletion.
        """
        def delete(txn: StorageTransaction) -> Deposit:
            plan = self._read_plan(txn, client_id, numero_cartola)
            deposit = self._read_deposit(txn, client_id, numero_cartola, deposit_id)
            if deposit.estado_deposito == DepositStatus.CONFIRMADO:
                plan.saldo_actual -= deposit.monto_deposito
                plan.ultima_actualizacion = self.clock()
                txn.set(self.plans_table, plan.id, plan.to_dict())
            txn.delete(self.deposits_table, deposit.id)
            return deposit

        deposit = self.storage.run_transaction(delete, max_attempts=self.max_attempts)

        self._audit_deposit(AuditEventType.DEPOSIT_DELETED, deposit, identity)
        log_action(logger, "info", f"Deposit deleted ({deposit.estado_deposito.value})",
                   user_id=identity.uid, action="deposit_deleted", resource=f"deposit:{deposit.id}")
        return deposit

    def get_deposits(self, client_id: str, numero_cartola: int) -> List[Deposit]:
        """Deposits of one plan, newest first"""
        deposits = [
            Deposit.from_dict(d) for d in self.storage.find(
                self.deposits_table, {"clienteId": client_id, "numeroCartola": numero_cartola}
            )
        ]
        deposits.sort(key=lambda d: d.fecha_deposito, reverse=True)
        return deposits

    def get_pending_deposits(self) -> List[Dict[str, Any]]:
        """Every deposit awaiting verification across all clients, with its plan name"""
        pending = []
        names: Dict[str, str] = {}
        for data in self.storage.find(self.deposits_table, {"estadoDeposito": DepositStatus.EN_VERIFICACION.value}):
            deposit = Deposit.from_dict(data)
            key = plan_key(deposit.cliente_id, deposit.numero_cartola)
            if key not in names:
                plan = self.storage.load(self.plans_table, key) or {}
                names[key] = plan.get("nombrePlan") or f"Plan #{deposit.numero_cartola}"
            row = deposit.to_dict()
            row["nombrePlan"] = names[key]
            pending.append(row)
        pending.sort(key=lambda row: row["fechaDeposito"])
        return pending

    # --- withdrawals ------------------------------------------------------

    def request_withdrawal(
        self,
        client_id: str,
        numero_cartola: int,
        amount: Amount,
        destination: WithdrawalDestination,
        identity: Identity,
        nota_cliente: str = ""
    ) -> Withdrawal:
        """Client requests a withdrawal; funds are checked, balance untouched until processed"""
        value = require_positive(amount, "montoRetiro")
        destination.validate()
        plan = self.get_plan(client_id, numero_cartola)
        self._check_funds(plan, value)

        withdrawal = Withdrawal(
            id=str(uuid.uuid4()),
            cliente_id=client_id,
            numero_cartola=numero_cartola,
            monto_retiro=value,
            estado_retiro=WithdrawalStatus.SOLICITADO,
            fecha_solicitud=self.clock(),
            destino=destination,
            nota_cliente=nota_cliente or ""
        )
        self.storage.save(self.withdrawals_table, withdrawal.id, withdrawal.to_dict())

        self._audit_withdrawal(AuditEventType.WITHDRAWAL_REQUESTED, withdrawal, identity)
        log_action(logger, "info", "Withdrawal requested",
                   user_id=identity.uid, action="withdrawal_requested", resource=f"withdrawal:{withdrawal.id}")
        return withdrawal

    def process_withdrawal(
        self,
        client_id: str,
        numero_cartola: int,
        withdrawal_id: str,
        identity: Identity,
        note: Optional[str] = None
    ) -> Withdrawal:
        """Admin pays out a requested withdrawal, debiting the balance atomically"""
        def process(txn: StorageTransaction) -> Withdrawal:
            plan = self._read_plan(txn, client_id, numero_cartola)
            withdrawal = self._read_withdrawal(txn, client_id, numero_cartola, withdrawal_id)
            if withdrawal.estado_retiro != WithdrawalStatus.SOLICITADO:
                raise ValidationError(f"Withdrawal is already {withdrawal.estado_retiro.value}")
            self._check_funds(plan, withdrawal.monto_retiro)

            now = self.clock()
            plan.saldo_actual -= withdrawal.monto_retiro
            plan.ultima_actualizacion = now
            withdrawal.estado_retiro = WithdrawalStatus.PROCESADO
            withdrawal.admin_procesador_id = identity.uid
            withdrawal.fecha_procesado = now
            if note:
                withdrawal.nota_admin = note
            txn.set(self.plans_table, plan.id, plan.to_dict())
            txn.set(self.withdrawals_table, withdrawal.id, withdrawal.to_dict())
            return withdrawal

        withdrawal = self.storage.run_transaction(process, max_attempts=self.max_attempts)

        self._audit_withdrawal(AuditEventType.WITHDRAWAL_PROCESSED, withdrawal, identity)
        log_action(logger, "info", "Withdrawal processed, balance debited",
                   user_id=identity.uid, action="withdrawal_processed", resource=f"withdrawal:{withdrawal.id}")
        return withdrawal

    def reject_withdrawal(
        self,
        client_id: str,
        numero_cartola: int,
        withdrawal_id: str,
        note: str,
        identity: Identity
    ) -> Withdrawal:
        if not note or not note.strip():
            raise ValidationError("A rejection note is required")

        def reject(txn: StorageTransaction) -> Withdrawal:
            withdrawal = self._read_withdrawal(txn, client_id, numero_cartola, withdrawal_id)
            if withdrawal.estado_retiro != WithdrawalStatus.SOLICITADO:
                raise ValidationError(f"Withdrawal is already {withdrawal.estado_retiro.value}")
            withdrawal.estado_retiro = WithdrawalStatus.RECHAZADO
            withdrawal.nota_admin = note.strip()
            withdrawal.admin_procesador_id = identity.uid
            withdrawal.fecha_procesado = self.clock()
            txn.set(self.withdrawals_table, withdrawal.id, withdrawal.to_dict())
            return withdrawal

        withdrawal = self.storage.run_transaction(reject, max_attempts=self.max_attempts)

        self._audit_withdrawal(AuditEventType.WITHDRAWAL_REJECTED, withdrawal, identity)
        log_action(logger, "info", "Withdrawal rejected",
                   user_id=identity.uid, action="withdrawal_rejected", resource=f"withdrawal:{withdrawal.id}")
        return withdrawal

    def register_withdrawal_by_admin(
        self,
        client_id: str,
        numero_cartola: int,
        amount: Amount,
        identity: Identity,
        note: Optional[str] = None
    ) -> Withdrawal:
        """Register a withdrawal already Procesado, debiting the balance in the same transaction"""
        value = require_positive(amount, "montoRetiro")

        def register(txn: StorageTransaction) -> Withdrawal:
            plan = self._read_plan(txn, client_id, numero_cartola)
            self._check_funds(plan, value)
            now = self.clock()
            withdrawal = Withdrawal(
                id=str(uuid.uuid4()),
                cliente_id=client_id,
                numero_cartola=numero_cartola,
                monto_retiro=value,
                estado_retiro=WithdrawalStatus.PROCESADO,
                fecha_solicitud=now,
                admin_procesador_id=identity.uid,
                fecha_procesado=now,
                nota_admin=note or MANUAL_WITHDRAWAL_NOTE
            )
            plan.saldo_actual -= value
            plan.ultima_actualizacion = now
            txn.set(self.plans_table, plan.id, plan.to_dict())
            txn.set(self.withdrawals_table, withdrawal.id, withdrawal.to_dict())
            return withdrawal

        withdrawal = self.storage.run_transaction(register, max_attempts=self.max_attempts)

        self._audit_withdrawal(AuditEventType.WITHDRAWAL_PROCESSED, withdrawal, identity, manual=True)
        log_action(logger, "info", "Manual withdrawal registered",
                   user_id=identity.uid, action="withdrawal_manual", resource=f"withdrawal:{withdrawal.id}")
        return withdrawal

    def get_withdrawals(self, client_id: str, numero_cartola: int) -> List[Withdrawal]:
        """Withdrawals of one plan, newest first"""
        withdrawals = [
            Withdrawal.from_dict(d) for d in self.storage.find(
                self.withdrawals_table, {"clienteId": client_id, "numeroCartola": numero_cartola}
            )
        ]
        withdrawals.sort(key=lambda w: w.fecha_solicitud, reverse=True)
        return withdrawals

    # --- invariant --------------------------------------------------------

    def reconcile_balance(self, client_id: str, numero_cartola: int) -> Dict[str, Any]:
        """
        Recompute the balance from confirmed deposits minus processed withdrawals

        Returns:
            Dictionary with stored and computed balances and whether they match
        """
        plan = self.get_plan(client_id, numero_cartola)
        deposited = sum(
            (d.monto_deposito for d in self.get_deposits(client_id, numero_cartola)
             if d.estado_deposito == DepositStatus.CONFIRMADO),
            ZERO
        )
        withdrawn = sum(
            (w.monto_retiro for w in self.get_withdrawals(client_id, numero_cartola)
             if w.estado_retiro == WithdrawalStatus.PROCESADO),
            ZERO
        )
        computed = deposited - withdrawn
        return {
            "plan_id": plan.id,
            "stored_balance": round_money(plan.saldo_actual),
            "computed_balance": round_money(computed),
            "confirmed_deposits": round_money(deposited),
            "processed_withdrawals": round_money(withdrawn),
            "matches": round_money(plan.saldo_actual) == round_money(computed),
        }

    # --- helpers ----------------------------------------------------------

    def _check_funds(self, plan: SavingsPlan, amount: Decimal) -> None:
        if plan.saldo_actual <= ZERO:
            raise ValidationError("Saldo insuficiente para realizar el retiro.")
        if amount > plan.saldo_actual:
            raise ValidationError(
                f"El monto a retirar ({money_str(amount)}) no puede superar el saldo actual "
                f"({money_str(plan.saldo_actual)})."
            )

    def _read_plan(self, txn: StorageTransaction, client_id: str, numero_cartola: int) -> SavingsPlan:
        data = txn.get(self.plans_table, plan_key(client_id, numero_cartola))
        if not data:
            raise NotFoundError(f"Savings plan {numero_cartola} not found for client {client_id}")
        return SavingsPlan.from_dict(data)

    def _read_deposit(self, txn: StorageTransaction, client_id: str,
                      numero_cartola: int, deposit_id: str) -> Deposit:
        data = txn.get(self.deposits_table, deposit_id)
        if not data or data.get("clienteId") != client_id or int(data.get("numeroCartola", 0)) != numero_cartola:
            raise NotFoundError(f"Deposit {deposit_id} not found in plan {numero_cartola}")
        return Deposit.from_dict(data)

    def _read_withdrawal(self, txn: StorageTransaction, client_id: str,
                         numero_cartola: int, withdrawal_id: str) -> Withdrawal:
        data = txn.get(self.withdrawals_table, withdrawal_id)
        if not data or data.get("clienteId") != client_id or int(data.get("numeroCartola", 0)) != numero_cartola:
            raise NotFoundError(f"Withdrawal {withdrawal_id} not found in plan {numero_cartola}")
        return Withdrawal.from_dict(data)

    def _audit_deposit(self, event_type: AuditEventType, deposit: Deposit,
                       identity: Identity, manual: bool = False) -> None:
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="deposit",
            entity_id=deposit.id,
            user_id=identity.uid,
            metadata={
                "plan_id": plan_key(deposit.cliente_id, deposit.numero_cartola),
                "amount": deposit.monto_deposito,
                "status": deposit.estado_deposito.value,
                "manual": manual,
            }
        )

    def _audit_withdrawal(self, event_type: AuditEventType, withdrawal: Withdrawal,
                          identity: Identity, manual: bool = False) -> None:
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="withdrawal",
            entity_id=withdrawal.id,
            user_id=identity.uid,
            metadata={
                "plan_id": plan_key(withdrawal.cliente_id, withdrawal.numero_cartola),
                "amount": withdrawal.monto_retiro,
                "status": withdrawal.estado_retiro.value,
                "manual": manual,
            }
        )
