import logging

from sqlalchemy import select
from sqlalchemy.orm import Session

from floor_control.models import MACHINE_STATUSES, Machine

logger = logging.getLogger(__name__)


class MachineNotFoundError(Exception):
    def __init__(self, machine_id: int):
        super().__init__(f"No machine found with id={machine_id!r}")
        self.machine_id = machine_id


class DuplicateMachineError(Exception):
    def __init__(self, number: str):
        super().__init__(f"Machine number {number!r} already exists")
        self.number = number


class InvalidMachineStatusError(ValueError):
    def __init__(self, status: str):
        super().__init__(
            f"Unsupported machine status: {status!r}. Supported: {', '.join(MACHINE_STATUSES)}"
        )
        self.status = status


class MachineRegistry:
    def __init__(self, session: Session):
        self._session = session

    def get_machine(self, machine_id: int) -> Machine:
        machine = self._session.get(Machine, machine_id)
        if machine is None:
            raise MachineNotFoundError(machine_id)
        return machine

    def list_machines(self) -> list[Machine]:
        return list(self._session.execute(select(Machine).order_by(Machine.id.asc())).scalars().all())

    def create_machine(self, number: str, name: str | None = None, status: str = "idle") -> Machine:
        number = (number or "").strip()
        if not number:
            raise ValueError("machine number must be non-empty")
        if status not in MACHINE_STATUSES:
            raise InvalidMachineStatusError(status)
        exists = self._session.execute(select(Machine.id).where(Machine.number == number)).first()
        if exists is not None:
            raise DuplicateMachineError(number)
        machine = Machine(number=number, name=name, status=status)
        self._session.add(machine)
        self._session.flush()
        return machine

    def set_status(self, machine_id: int, status: str) -> Machine:
        if status not in MACHINE_STATUSES:
            raise InvalidMachineStatusError(status)
        machine = self.get_machine(machine_id)
        if machine.status != status:
            logger.info("machine %s status %s -> %s", machine.number, machine.status, status)
            machine.status = status
            self._session.flush()
        return machine
