"""
Inventory Service — イベント定義

在庫台帳で発生するイベント。inventory_events チャネルに発行される。
"""

from datetime import datetime

from pydantic import BaseModel


class StockReserved(BaseModel):
    """在庫が引き当てられた"""
    product_id: str
    quantity: int
    available_quantity: int
    reserved_quantity: int
    timestamp: datetime


class StockReservationFailed(BaseModel):
    """在庫引き当てが失敗した（在庫不足、状態は変更なし）"""
    product_id: str
    quantity_requested: int
    quantity_available: int
    timestamp: datetime


class StockReleased(BaseModel):
    """引き当てが解放された（決済失敗時の補償）"""
    product_id: str
    quantity: int
    available_quantity: int
    reserved_quantity: int
    timestamp: datetime


class ReservationConfirmed(BaseModel):
    """引き当て分が確定し、在庫から永久に差し引かれた"""
    product_id: str
    quantity: int
    available_quantity: int
    reserved_quantity: int
    timestamp: datetime


class StockLevelSet(BaseModel):
    """利用可能在庫が上書きされた（入荷・棚卸し）"""
    product_id: str
    available_quantity: int
    reserved_quantity: int
    timestamp: datetime
