from django.urls import path
from . import views

app_name = 'exams'

urlpatterns = [
    # Student login and session
    path('sinav-giris/', views.exam_login, name='exam_login'),
    path('api/exam-login/', views.exam_login, name='exam_login_api'),
    path('sinav/logout/', views.exam_logout, name='exam_logout'),

    # Exam taking (behind the exam access gate)
    path('sinav/<int:exam_id>/', views.exam_session, name='exam_session'),
    path('sinav/<int:exam_id>/answers/', views.submit_answer, name='submit_answer'),
    path('sinav/<int:exam_id>/finish/', views.finish_exam, name='finish_exam'),
    path('sinav-sonuc/<int:exam_id>/', views.exam_result, name='exam_result'),

    # Staff session provider
    path('login/', views.staff_login, name='staff_login'),
    path('logout/', views.staff_logout, name='staff_logout'),

    # Staff panel (behind the staff gate)
    path('panel/exams/<int:exam_id>/open/', views.open_exam, name='open_exam'),
    path('panel/exams/<int:exam_id>/close/', views.close_exam, name='close_exam'),
    path('panel/exams/<int:exam_id>/live-results/', views.live_results, name='live_results'),
    path('panel/exams/<int:exam_id>/students/<int:student_id>/result/', views.student_result, name='student_result'),
    path('panel/exams/<int:exam_id>/results/', views.stored_results, name='stored_results'),
    path('panel/exams/<int:exam_id>/results/recompute/', views.recompute_results, name='recompute_results'),

    # Monitoring
    path('health/', views.health_check, name='health_check'),
]
