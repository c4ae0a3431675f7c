"""Resolve Thai administrative area codes into display names."""

from __future__ import annotations

import logging
import re
from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass
from typing import Any, Callable, Iterable, NamedTuple

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from dispatchdesk.models import District, SubDistrict

logger = logging.getLogger(__name__)

SessionOpener = Callable[[], AbstractAsyncContextManager[AsyncSession]]

BANGKOK_NAME = "กรุงเทพมหานคร"
BANGKOK_SHORT_NAME = "กทม."
_DISTRICT_PREFIX = re.compile(r"^(เขต|อ\.|อำเภอ)")


class Province(NamedTuple):
    id: int
    name_th: str
    name_en: str
    geography_id: int


PROVINCES: tuple[Province, ...] = (
    Province(1, "กรุงเทพมหานคร", "Bangkok", 2),
    Province(2, "สมุทรปราการ", "Samut Prakan", 2),
    Province(3, "นนทบุรี", "Nonthaburi", 2),
    Province(4, "ปทุมธานี", "Pathum Thani", 2),
    Province(5, "พระนครศรีอยุธยา", "Phra Nakhon Si Ayutthaya", 2),
    Province(6, "อ่างทอง", "Ang Thong", 2),
    Province(7, "ลพบุรี", "Lopburi", 2),
    Province(8, "สิงห์บุรี", "Sing Buri", 2),
    Province(9, "ชัยนาท", "Chai Nat", 2),
    Province(10, "สระบุรี", "Saraburi", 2),
    Province(11, "ชลบุรี", "Chon Buri", 5),
    Province(12, "ระยอง", "Rayong", 5),
    Province(13, "จันทบุรี", "Chanthaburi", 5),
    Province(14, "ตราด", "Trat", 5),
    Province(15, "ฉะเชิงเทรา", "Chachoengsao", 5),
    Province(16, "ปราจีนบุรี", "Prachin Buri", 5),
    Province(17, "นครนายก", "Nakhon Nayok", 2),
    Province(18, "สระแก้ว", "Sa Kaeo", 5),
    Province(19, "นครราชสีมา", "Nakhon Ratchasima", 3),
    Province(20, "บุรีรัมย์", "Buri Ram", 3),
    Province(21, "สุรินทร์", "Surin", 3),
    Province(22, "ศรีสะเกษ", "Si Sa Ket", 3),
    Province(23, "อุบลราชธานี", "Ubon Ratchathani", 3),
    Province(24, "ยโสธร", "Yasothon", 3),
    Province(25, "ชัยภูมิ", "Chaiyaphum", 3),
    Province(26, "อำนาจเจริญ", "Amnat Charoen", 3),
    Province(27, "หนองบัวลำภู", "Nong Bua Lam Phu", 3),
    Province(28, "ขอนแก่น", "Khon Kaen", 3),
    Province(29, "อุดรธานี", "Udon Thani", 3),
    Province(30, "เลย", "Loei", 3),
    Province(31, "หนองคาย", "Nong Khai", 3),
    Province(32, "มหาสารคาม", "Maha Sarakham", 3),
    Province(33, "ร้อยเอ็ด", "Roi Et", 3),
    Province(34, "กาฬสินธุ์", "Kalasin", 3),
    Province(35, "สกลนคร", "Sakon Nakhon", 3),
    Province(36, "นครพนม", "Nakhon Phanom", 3),
    Province(37, "มุกดาหาร", "Mukdahan", 3),
    Province(38, "เชียงใหม่", "Chiang Mai", 1),
    Province(39, "ลำพูน", "Lamphun", 1),
    Province(40, "ลำปาง", "Lampang", 1),
    Province(41, "อุตรดิตถ์", "Uttaradit", 1),
    Province(42, "แพร่", "Phrae", 1),
    Province(43, "น่าน", "Nan", 1),
    Province(44, "พะเยา", "Phayao", 1),
    Province(45, "เชียงราย", "Chiang Rai", 1),
    Province(46, "แม่ฮ่องสอน", "Mae Hong Son", 1),
    Province(47, "นครสวรรค์", "Nakhon Sawan", 2),
    Province(48, "อุทัยธานี", "Uthai Thani", 2),
    Province(49, "กำแพงเพชร", "Kamphaeng Phet", 2),
    Province(50, "ตาก", "Tak", 4),
    Province(51, "สุโขทัย", "Sukhothai", 2),
    Province(52, "พิษณุโลก", "Phitsanulok", 2),
    Province(53, "พิจิตร", "Phichit", 2),
    Province(54, "เพชรบูรณ์", "Phetchabun", 2),
    Province(55, "ราชบุรี", "Ratchaburi", 4),
    Province(56, "กาญจนบุรี", "Kanchanaburi", 4),
    Province(57, "สุพรรณบุรี", "Suphan Buri", 2),
    Province(58, "นครปฐม", "Nakhon Pathom", 2),
    Province(59, "สมุทรสาคร", "Samut Sakhon", 2),
    Province(60, "สมุทรสงคราม", "Samut Songkhram", 2),
    Province(61, "เพชรบุรี", "Phetchaburi", 4),
    Province(62, "ประจวบคีรีขันธ์", "Prachuap Khiri Khan", 4),
    Province(63, "นครศรีธรรมราช", "Nakhon Si Thammarat", 6),
    Province(64, "กระบี่", "Krabi", 6),
    Province(65, "พังงา", "Phangnga", 6),
    Province(66, "ภูเก็ต", "Phuket", 6),
    Province(67, "สุราษฎร์ธานี", "Surat Thani", 6),
    Province(68, "ระนอง", "Ranong", 6),
    Province(69, "ชุมพร", "Chumphon", 6),
    Province(70, "สงขลา", "Songkhla", 6),
    Province(71, "สตูล", "Satun", 6),
    Province(72, "ตรัง", "Trang", 6),
    Province(73, "พัทลุง", "Phatthalung", 6),
    Province(74, "ปัตตานี", "Pattani", 6),
    Province(75, "ยะลา", "Yala", 6),
    Province(76, "นราธิวาส", "Narathiwat", 6),
    Province(77, "บึงกาฬ", "Bueng Kan", 3),
)


@dataclass
class LocationQuery:
    province_code: int | None = None
    district_code: int | None = None
    subdistrict_code: int | None = None
    address_detail: str | None = None


@dataclass
class ResolvedLocation:
    province_code: int | None
    province_name: str | None
    district_code: int | None
    district_name: str | None
    subdistrict_code: int | None
    subdistrict_name: str | None
    address_detail: str | None
    display: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "province_code": self.province_code,
            "province_name": self.province_name,
            "district_code": self.district_code,
            "district_name": self.district_name,
            "subdistrict_code": self.subdistrict_code,
            "subdistrict_name": self.subdistrict_name,
            "address_detail": self.address_detail,
            "display": self.display,
        }


def format_location_display(district_name: str | None, province_name: str | None) -> str:
    """Build the short ``district, province`` label used on ticket cards."""

    parts: list[str] = []
    if district_name:
        parts.append(_DISTRICT_PREFIX.sub("", district_name))
    if province_name:
        parts.append(BANGKOK_SHORT_NAME if province_name == BANGKOK_NAME else province_name)
    return ", ".join(parts)


class LocationResolver:
    """Read-through cache for province, district and sub-district names.

    Provinces come from the embedded table. Districts and sub-districts are
    loaded from the reference tables on first use and kept for the lifetime of
    the instance. Concurrent first loads simply repeat the same query.
    """

    def __init__(self, open_session: SessionOpener) -> None:
        self._open_session = open_session
        self._provinces: dict[int, Province] = {province.id: province for province in PROVINCES}
        self._districts: dict[int, dict[str, Any]] | None = None
        self._subdistricts: dict[int, dict[str, Any]] | None = None

    def get_province(self, code: int | None) -> Province | None:
        if code is None:
            return None
        return self._provinces.get(code)

    def get_province_name(self, code: int | None) -> str | None:
        province = self.get_province(code)
        return province.name_th if province else None

    async def _load_districts(self) -> dict[int, dict[str, Any]]:
        if self._districts is not None:
            return self._districts
        try:
            async with self._open_session() as session:
                rows = (
                    await session.execute(
                        select(
                            District.id,
                            District.name_th,
                            District.name_en,
                            District.province_id,
                        )
                    )
                ).all()
        except SQLAlchemyError as exc:
            logger.error("Failed to load districts: %s", exc)
            return {}
        self._districts = {row.id: dict(row._mapping) for row in rows}
        return self._districts

    async def _load_subdistricts(self) -> dict[int, dict[str, Any]]:
        if self._subdistricts is not None:
            return self._subdistricts
        try:
            async with self._open_session() as session:
                rows = (
                    await session.execute(
                        select(
                            SubDistrict.id,
                            SubDistrict.name_th,
                            SubDistrict.name_en,
                            SubDistrict.district_id,
                            SubDistrict.zip_code,
                        )
                    )
                ).all()
        except SQLAlchemyError as exc:
            logger.error("Failed to load sub-districts: %s", exc)
            return {}
        self._subdistricts = {row.id: dict(row._mapping) for row in rows}
        return self._subdistricts

    async def warm(self) -> None:
        await self._load_districts()
        await self._load_subdistricts()

    async def get_district(self, code: int | None) -> dict[str, Any] | None:
        if code is None:
            return None
        return (await self._load_districts()).get(code)

    async def get_district_name(self, code: int | None) -> str | None:
        district = await self.get_district(code)
        return district["name_th"] if district else None

    async def get_subdistrict(self, code: int | None) -> dict[str, Any] | None:
        if code is None:
            return None
        return (await self._load_subdistricts()).get(code)

    async def get_subdistrict_name(self, code: int | None) -> str | None:
        subdistrict = await self.get_subdistrict(code)
        return subdistrict["name_th"] if subdistrict else None

    async def resolve(
        self,
        province_code: int | None = None,
        district_code: int | None = None,
        subdistrict_code: int | None = None,
        address_detail: str | None = None,
    ) -> ResolvedLocation:
        query = LocationQuery(province_code, district_code, subdistrict_code, address_detail)
        return (await self.batch_resolve([query]))[0]

    async def batch_resolve(self, queries: Iterable[LocationQuery]) -> list[ResolvedLocation]:
        """Resolve many locations after loading each lookup table once."""

        districts = await self._load_districts()
        subdistricts = await self._load_subdistricts()

        resolved: list[ResolvedLocation] = []
        for query in queries:
            province_name = self.get_province_name(query.province_code)
            district = districts.get(query.district_code) if query.district_code is not None else None
            subdistrict = (
                subdistricts.get(query.subdistrict_code)
                if query.subdistrict_code is not None
                else None
            )
            district_name = district["name_th"] if district else None
            resolved.append(
                ResolvedLocation(
                    province_code=query.province_code,
                    province_name=province_name,
                    district_code=query.district_code,
                    district_name=district_name,
                    subdistrict_code=query.subdistrict_code,
                    subdistrict_name=subdistrict["name_th"] if subdistrict else None,
                    address_detail=query.address_detail,
                    display=format_location_display(district_name, province_name),
                )
            )
        return resolved

    def clear_cache(self) -> None:
        self._districts = None
        self._subdistricts = None
