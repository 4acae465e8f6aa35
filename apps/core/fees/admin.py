from django.contrib import admin

from .models import (
    FeeCategory,
    FeeCollection,
    FeePaymentEntry,
    FeeReceipt,
    FeeStructure,
    FeeStructureComponent,
)


@admin.register(FeeCategory)
class FeeCategoryAdmin(admin.ModelAdmin):
    list_display = ('name', 'school', 'is_active')
    list_filter = ('school', 'is_active')
    search_fields = ('name',)


class FeeStructureComponentInline(admin.TabularInline):
    model = FeeStructureComponent
    extra = 0


@admin.register(FeeStructure)
class FeeStructureAdmin(admin.ModelAdmin):
    list_display = (
        'name',
        'school',
        'school_class',
        'academic_year',
        'total_amount',
        'frequency',
        'status',
    )
    list_filter = ('school', 'academic_year', 'frequency', 'status')
    search_fields = ('name', 'description')
    inlines = [FeeStructureComponentInline]


@admin.register(FeeCollection)
class FeeCollectionAdmin(admin.ModelAdmin):
    list_display = (
        'student',
        'fee_structure',
        'academic_year',
        'month',
        'total_amount',
        'paid_amount',
        'due_amount',
        'due_date',
        'status',
    )
    list_filter = ('school', 'academic_year', 'status')
    search_fields = ('student__admission_number', 'student__first_name', 'fee_structure__name')
    readonly_fields = ('paid_amount', 'due_amount', 'status', 'version', 'cancelled_at', 'cancelled_by')


@admin.register(FeePaymentEntry)
class FeePaymentEntryAdmin(admin.ModelAdmin):
    list_display = ('fee_collection', 'source', 'receipt', 'amount', 'payment_date', 'payment_method', 'is_active')
    list_filter = ('source', 'payment_method', 'is_active', 'fee_collection__school')
    search_fields = ('fee_collection__student__admission_number', 'receipt__receipt_number', 'transaction_id')

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(FeeReceipt)
class FeeReceiptAdmin(admin.ModelAdmin):
    list_display = ('receipt_number', 'student', 'amount', 'payment_method', 'payment_date', 'status', 'created_at')
    list_filter = ('school', 'status', 'payment_method', 'academic_year')
    search_fields = ('receipt_number', 'student__admission_number', 'transaction_id', 'cheque_number')

    def has_delete_permission(self, request, obj=None):
        return False
