"""
Module: supply_kernel.selectors.episode_selector
Responsibility: Read-only queries over usage episodes: lookup, filtered
    listing, per-patient and per-department listings and episode statistics.
Architecture position: Kernel > Selectors.
"""

from uuid import UUID

from sqlalchemy import func, select

from supply_kernel.domain.dtos import EpisodeDTO, EpisodeStatistics, Page
from supply_kernel.domain.time_window import TimeWindow
from supply_kernel.exceptions import EpisodeNotFoundError
from supply_kernel.models.usage_episode import UsageEpisode
from supply_kernel.selectors.base import BaseSelector

_NEWEST_FIRST = (UsageEpisode.created_at.desc(), UsageEpisode.id.desc())


class EpisodeSelector(BaseSelector[UsageEpisode]):
    """Selector for usage episodes."""

    def get(self, episode_id: UUID) -> EpisodeDTO:
        episode = self.session.get(UsageEpisode, episode_id)
        if episode is None:
            raise EpisodeNotFoundError(str(episode_id))
        return EpisodeDTO.from_model(episode)

    def list_episodes(
        self,
        patient_hn: str | None = None,
        en: str | None = None,
        department_code: str | None = None,
        billing_status: str | None = None,
        usage_type: str | None = None,
        window: TimeWindow | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> Page[EpisodeDTO]:
        query = select(UsageEpisode).order_by(*_NEWEST_FIRST)
        if patient_hn:
            query = query.where(UsageEpisode.patient_hn == patient_hn)
        if en:
            query = query.where(UsageEpisode.en == en)
        if department_code:
            query = query.where(UsageEpisode.department_code == department_code)
        if billing_status:
            query = query.where(UsageEpisode.billing_status == billing_status)
        if usage_type:
            query = query.where(UsageEpisode.usage_type == usage_type)
        if window is not None:
            query = query.where(*window.apply(UsageEpisode.usage_datetime))

        total = self._count(query)
        episodes = self.session.scalars(self._page(query, page, limit)).all()
        return Page(
            data=tuple(EpisodeDTO.from_model(e) for e in episodes),
            total=total,
            page=page,
            limit=limit,
        )

    def find_by_patient_hn(self, patient_hn: str) -> list[EpisodeDTO]:
        episodes = self.session.scalars(
            select(UsageEpisode)
            .where(UsageEpisode.patient_hn == patient_hn)
            .order_by(*_NEWEST_FIRST)
        ).all()
        return [EpisodeDTO.from_model(e) for e in episodes]

    def find_by_department(self, department_code: str) -> list[EpisodeDTO]:
        episodes = self.session.scalars(
            select(UsageEpisode)
            .where(UsageEpisode.department_code == department_code)
            .order_by(*_NEWEST_FIRST)
        ).all()
        return [EpisodeDTO.from_model(e) for e in episodes]

    def statistics(self) -> EpisodeStatistics:
        total = self.session.scalar(select(func.count(UsageEpisode.id))) or 0

        by_billing_status: dict[str, int] = {}
        for status, count in self.session.execute(
            select(UsageEpisode.billing_status, func.count(UsageEpisode.id))
            .group_by(UsageEpisode.billing_status)
        ):
            by_billing_status[status or "UNBILLED"] = int(count)

        by_department: dict[str, int] = {}
        for department, count in self.session.execute(
            select(UsageEpisode.department_code, func.count(UsageEpisode.id))
            .group_by(UsageEpisode.department_code)
        ):
            by_department[department or "UNASSIGNED"] = int(count)

        return EpisodeStatistics(
            total_episodes=int(total),
            by_billing_status=dict(sorted(by_billing_status.items())),
            by_department=dict(sorted(by_department.items())),
        )
